"""Command line interface commands for agentcluster."""
