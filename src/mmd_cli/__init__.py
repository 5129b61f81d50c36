"""Command-line host for mermaid-preview."""
