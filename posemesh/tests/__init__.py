"""
Tests Module: Unit and Integration Tests

Test Coverage:
    - Core types, errors and configuration
    - Frame buffer, payload codec, store adapters
    - Hybrid flush, loss detection and session teardown
    - Recursive split reads and frame export
"""
