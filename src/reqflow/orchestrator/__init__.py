"""Queue-based delivery orchestrator for file-backed requirements.

Why not a task queue library?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Work items are Markdown files that humans edit, move, and read directly,
and every stage is an external CLI agent that routes items itself by
moving files between queue folders.  The orchestrator therefore owns only
routing correctness:

- one directory per queue, file presence = membership, rename = transition;
- post-run reconciliation of where an agent actually left an item;
- strict gate attempt accounting keyed by bundle;
- idempotence records that stop the planner from cycling forever.

A broker would duplicate the state that already lives in the folders, and
the single-instance loop keeps moves trivially race-free.
"""
