"""Common utilities shared by the secrets libraries (logging, async helpers)."""
