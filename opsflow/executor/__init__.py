"""Workflow execution: context, templating, durable steps and orchestration."""
