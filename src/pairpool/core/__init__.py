"""Core pool engines and runtime support."""
