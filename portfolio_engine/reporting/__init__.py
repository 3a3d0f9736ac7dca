"""
portfolio_engine.reporting — CLI display and flat-file export of optimization
history.

It does NOT produce new data — everything is read through the lifecycle
manager's query operations.

Modules:
  formatters — ASCII terminal formatters for Typer CLI commands.
  export     — CSV/JSON flat-file export helpers.
"""
