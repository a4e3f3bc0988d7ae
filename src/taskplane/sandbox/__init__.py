"""Files mounted read-only into every sandbox container."""
