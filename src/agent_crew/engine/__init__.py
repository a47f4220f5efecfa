"""Scheduling and execution engine: queue store, executors, runner lifecycle."""
