"""Agents package – inference client, scanner, engineer, test runner and the heal loop."""
