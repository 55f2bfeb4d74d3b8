"""Workflow steps. Concrete steps are resolved from their kind by ``reelsmith.workflow.registry``."""
