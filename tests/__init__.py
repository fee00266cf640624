"""FLOW-PRESSURE v1.0 test suite."""
