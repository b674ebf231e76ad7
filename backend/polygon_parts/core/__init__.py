"""Settings, error taxonomy and logging setup."""
