"""Worker side: agent pool, polling loops, execution, and the local execution log."""
