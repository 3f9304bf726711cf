"""Collectors for the monitoring service and on-chain logs."""
