"""Test contract builders and a local development node for integration tests."""