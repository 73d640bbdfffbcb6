"""Relay new RSS and Reddit items to Telegram subscribers."""
