"""AI rescoring client and schemas."""
