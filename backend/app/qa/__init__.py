"""Q&A REST endpoints sharing the socket relay."""
