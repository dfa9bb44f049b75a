"""Shared infrastructure: config, logging, exceptions, clocks and tickers."""
