"""Wave execution engine: plan, state, locking, classification, scheduling."""
