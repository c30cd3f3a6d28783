"""TaskPilot backend package."""
