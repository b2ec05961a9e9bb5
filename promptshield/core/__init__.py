"""Core services for PromptShield."""
