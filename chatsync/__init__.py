"""Message delivery and synchronization subsystem for the chat client."""
