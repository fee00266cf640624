"""
FLOW-PRESSURE v1.0 Unit Test Suite
==================================

Fast, isolated tests for the business logic. Entity state lives in a
per-test LocalEntityStore under tmp_path; no network calls.
"""
