"""Task execution engine, session loop and control-plane commands."""
