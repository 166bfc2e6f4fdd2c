"""AI Wingman audio relay between browser clients and a streaming speech service."""
