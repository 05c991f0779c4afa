"""Asset generation orchestrator service."""
