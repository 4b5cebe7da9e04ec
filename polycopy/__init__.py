"""Polymarket copy trader with take-profit / trailing-stop exits."""

__version__ = "0.1.0"
