"""Executors for single tasks and the three team topologies."""
