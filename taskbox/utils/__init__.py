"""Small helpers shared across taskbox."""
