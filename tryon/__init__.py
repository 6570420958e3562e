"""Real-time glasses virtual try-on engine."""
