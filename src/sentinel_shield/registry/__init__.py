"""Protection lifecycle of monitored contracts."""
