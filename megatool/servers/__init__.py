"""Bundled MCP tool servers, installed as ``megatool-<name>`` console scripts."""
