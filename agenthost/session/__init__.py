"""Interactive terminal sessions: buffering, ownership and output streaming."""
