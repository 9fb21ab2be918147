"""MCP surface for refinery."""
