"""Sandbox creation workflow and the stage helpers it is built from."""
