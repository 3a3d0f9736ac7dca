"""Adapters for the external services the engine depends on: the prediction
service and current market prices."""
