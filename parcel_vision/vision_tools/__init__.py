"""Configuration, logging, capture bundle and CLI tooling."""
