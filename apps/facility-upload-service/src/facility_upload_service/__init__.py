"""Health facility CSV staging upload service."""
