"""Photo task state machine: store, handlers, dispatcher and worker hand-off."""
