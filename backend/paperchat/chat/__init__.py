"""Paper-scoped chat: rooms, messages, visibility and real-time delivery."""
