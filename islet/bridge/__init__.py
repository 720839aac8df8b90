"""Subprocess RPC bridge and the helper process it drives."""
