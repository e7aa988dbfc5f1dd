"""Process-level plumbing shared by the engine and its drivers."""
