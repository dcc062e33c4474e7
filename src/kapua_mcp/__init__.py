"""Kapua MCP Server.

Resilient client layer and MCP front door for the Eclipse Kapua IoT
device-management API: session lifecycle, device queries and fleet health.
"""

__version__ = "0.1.0"
