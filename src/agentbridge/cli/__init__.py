"""Interactive terminal front-end for agentbridge."""
