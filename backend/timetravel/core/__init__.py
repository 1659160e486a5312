"""Core: pure rules, scoring and types. Nothing in here performs IO."""
