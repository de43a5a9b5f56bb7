"""Action registry, command dispatch and tool-call routing."""
