"""Habit reminder dispatch: slot windows, per-day sent state, SMS transports."""
