"""
Integration tests for the review-load engine.

Each test runs the real runner (setup, scheduler, scenario, gate,
teardown) over real HTTP against the in-process fake reviewer service.
"""
