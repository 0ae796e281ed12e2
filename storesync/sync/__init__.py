"""Store pulls, sync tasks, slot scheduling and batch coordination."""
