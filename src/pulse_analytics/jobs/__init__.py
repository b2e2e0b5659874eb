"""Scheduled jobs for Pulse Analytics (discovery, validation, roll-up, forecasts)."""
