"""Broker interface and Alpaca client."""
