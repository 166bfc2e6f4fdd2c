"""Client-facing WebSocket gateway for the relay."""
