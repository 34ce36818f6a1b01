"""Workflow, routing, quiz and vacation services."""
