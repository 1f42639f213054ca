"""Login, lockout and remembered-device trust."""
