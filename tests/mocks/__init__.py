"""
Test doubles for the review-load test suite.

- http: scriptable stand-ins for ``requests.Session`` / ``Response``
- review_service: an in-memory Flask version of the reviewer service
"""
