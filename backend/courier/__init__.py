"""Courier: ordered, durable, real-time message delivery for chats."""
