"""SQLite persistence for job statuses, batches and queue items."""
