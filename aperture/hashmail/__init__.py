"""In-memory mailbox server with single-reader, single-writer streams."""