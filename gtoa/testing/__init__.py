"""
Test suite for the GtoA pipeline.

Run with:
    pytest gtoa/testing
"""
