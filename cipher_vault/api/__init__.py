"""Local HTTP gateway for the vault runtime."""
