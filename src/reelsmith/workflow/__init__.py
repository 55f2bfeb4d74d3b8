"""Workflow orchestration: definitions, steps, retries and the execution engine."""
