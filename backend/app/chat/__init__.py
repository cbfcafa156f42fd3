"""Chat REST endpoints sharing the socket relay."""
