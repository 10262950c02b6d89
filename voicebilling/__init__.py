"""Usage-based billing and automated invoice engine."""
