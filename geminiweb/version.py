"""Single source of truth for the geminiweb version."""

VERSION = "0.4.0"
