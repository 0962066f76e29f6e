"""Tool definitions, catalogue assembly and remote tool servers."""
