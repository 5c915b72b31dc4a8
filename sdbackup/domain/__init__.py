"""Domain objects shared by the storage layer and the orchestrator."""
