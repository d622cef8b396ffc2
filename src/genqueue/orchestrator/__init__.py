"""Job orchestration for AI generation work.

Why not Celery / RQ / Dramatiq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not moving messages, it is the status contract around
them: every returned id must read back immediately, state only moves
forward even when a redelivered item races a late writer, and batches keep
index-stable results with a stop-on-error policy that cancels work that
has not started. Those rules live in the status store and the batch
coordinator whatever broker sits underneath.

For a single-machine tool a SQLite-backed queue with atomic conditional
claims gives at-least-once delivery without an extra service to operate.
The ``WorkQueue`` protocol is the seam for a real broker later.
"""
