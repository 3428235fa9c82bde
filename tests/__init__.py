"""
Test suite for the review-load harness.

This package contains:
- unit/: Isolated tests for metrics, thresholds, scheduling and the scenario
- integration/: Full runs against an in-process fake of the reviewer service
- live/: Smoke runs against a real service at LOAD_TEST_BASE_URL
- mocks/: Hand-written test doubles (fake HTTP session, fake service)
"""
