"""Setup pipeline orchestration."""
