"""Domain services for chat sessions, quotas, leads and their collaborators."""
