"""Test package marker so suites can import ``tests.conftest`` helpers.

The file exposes no symbols and must stay side-effect free.
"""
