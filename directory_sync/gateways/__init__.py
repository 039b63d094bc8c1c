"""Directory integrations. Each module provides one DirectoryAPIBase subclass."""
