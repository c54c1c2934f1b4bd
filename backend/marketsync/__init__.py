"""Real-time synchronization core for the service marketplace client."""
