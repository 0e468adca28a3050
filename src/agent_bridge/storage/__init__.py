"""SQLite persistence for chats, goals, tasks and memories."""
