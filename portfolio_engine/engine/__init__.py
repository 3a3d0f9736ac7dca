"""
Optimization lifecycle and transaction execution.

  engine/errors.py      — error taxonomy with structured reasons.
  engine/cool_off.py    — pure cool-off arithmetic.
  engine/translator.py  — recommendations → on-hold transactions.
  engine/processor.py   — executes on-hold transactions against holdings.
  engine/reconciler.py  — derives terminal optimization states from
                          durable transaction states.
  engine/lifecycle.py   — the optimization state machine and its guards.
"""
