"""Internal implementation details of the agentpipe SDK."""
