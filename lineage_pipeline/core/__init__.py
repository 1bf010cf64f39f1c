"""Pipeline plumbing: durable channels, batch consumers, dead letters and the archive."""
