"""Runtime probing, daemon connectivity and backend selection."""
