"""Response side of the pipeline: executor, notices and wiring."""
