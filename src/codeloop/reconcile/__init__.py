"""Reconciliation loop for file-based, context-free agent iterations.

Two stores, two consistency domains
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Each task owns a strictly ordered, private iteration log (``task_store``).
All tasks share a loosely consistent key-value knowledge base
(``knowledge``) that is the only memory carried between tasks.  Keeping them
apart means a new prompt never sees another task's iteration history while
still starting warm from facts the project has already taught earlier runs.

Every iteration is a fresh agent process.  Whatever the next iteration
needs to know must be on disk before the current one finishes.
"""
