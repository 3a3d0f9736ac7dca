"""Portfolio optimization lifecycle and transaction execution engine."""
