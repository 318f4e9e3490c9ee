"""Orchestration kernel for the manuscript loop.

One task at a time: resolve eligible work, rank it, dispatch it to a worker,
commit the outcome, and every few iterations run the full review sweep instead.

The queue lives in SQLite rather than a broker. Exactly one scheduler process
drives it, every transition is a single committed transaction, and the
``tasks.json`` document that progress tooling reads is exported from the same
store after each iteration.
"""
