from __future__ import annotations

import base64
import json

from taskbox.sandbox.base import (
    LABEL_SCHEMA_VERSION,
    CommandResult,
    SandboxLabelConfig,
    SandboxNotFoundError,
    SandboxTimeoutError,
)


def encode_raw(payload: object) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def test_command_result_accessors_return_captured_text() -> None:
    result = CommandResult(exit_code=0, captured_stdout="out", captured_stderr="err")

    assert result.success is True
    assert result.stdout() == result.stdout() == "out"
    assert result.stderr() == "err"
    assert result.unpack() == (0, "out", "err")
    assert CommandResult(exit_code=2).success is False


def test_label_round_trip_keeps_ports_and_volumes() -> None:
    label = SandboxLabelConfig(
        ports=[8080, 5173],
        workspace_volume="box-workspace",
        cache_volume="box-cache",
    )

    decoded = SandboxLabelConfig.decode(label.encode(), sandbox_id="box")

    assert decoded.schema_version == LABEL_SCHEMA_VERSION
    assert decoded.ports == [8080, 5173]
    assert decoded.workspace_volume == "box-workspace"
    assert decoded.cache_volume == "box-cache"


def test_label_decodes_unversioned_camel_case_shape() -> None:
    encoded = encode_raw(
        {"ports": [3000], "workspaceVolume": "old-ws", "cacheVolume": "old-cache"}
    )

    decoded = SandboxLabelConfig.decode(encoded, sandbox_id="old")

    assert decoded.schema_version == 0
    assert decoded.ports == [3000]
    assert decoded.workspace_volume == "old-ws"
    assert decoded.cache_volume == "old-cache"


def test_label_falls_back_to_name_derived_defaults() -> None:
    for encoded in (None, "", "%%% not base64 %%%", encode_raw(["a", "list"]), encode_raw({"ports": [1]})):
        decoded = SandboxLabelConfig.decode(encoded, sandbox_id="box")
        assert decoded.ports == [3000, 5173]
        assert decoded.workspace_volume == "box-workspace"
        assert decoded.cache_volume == "box-cache"


def test_label_with_empty_ports_uses_default_ports() -> None:
    encoded = encode_raw(
        {"schema_version": 1, "ports": [], "workspace_volume": "w", "cache_volume": "c"}
    )
    assert SandboxLabelConfig.decode(encoded, sandbox_id="box").ports == [3000, 5173]


def test_error_messages_name_the_sandbox() -> None:
    assert str(SandboxNotFoundError("box")) == "Sandbox not found: box"
    assert isinstance(SandboxTimeoutError("slow"), TimeoutError)
