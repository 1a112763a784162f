"""Per-session voice pipeline: client channel, turn state machine and session registry."""
