"""Clients for the price service, execution venue and wallet service."""
