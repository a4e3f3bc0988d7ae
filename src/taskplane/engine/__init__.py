"""Task orchestration engine: runners, the scheduler loop and the operator console."""
