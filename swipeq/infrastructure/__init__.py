"""Settings, environment loading, retry and sqlite plumbing."""
