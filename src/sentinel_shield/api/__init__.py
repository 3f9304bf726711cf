"""HTTP endpoint and client for emergency pauses."""
