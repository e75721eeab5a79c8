"""Signal detection over streaming price data."""
