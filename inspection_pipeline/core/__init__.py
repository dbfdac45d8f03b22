"""Job orchestration: state machine, chaining, delivery and recovery."""
