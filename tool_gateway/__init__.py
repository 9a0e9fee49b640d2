"""MCP tool gateway with identity-gated tool visibility."""
