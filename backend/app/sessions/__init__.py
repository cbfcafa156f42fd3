"""Session catalogue and registration endpoints."""
