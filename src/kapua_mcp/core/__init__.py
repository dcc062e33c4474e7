"""Core logic: Kapua client, session lifecycle, health classification and fleet aggregation.

This module is framework-agnostic. It has no dependency on MCP, FastMCP,
or any server framework.
"""
