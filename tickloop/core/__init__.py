"""Configuration, domain models and the engine orchestration."""
