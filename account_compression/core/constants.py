"""Program addresses and the tree dimensions the program accepts."""

SPL_ACCOUNT_COMPRESSION_ADDRESS = "cmtDvXumGCrqC1Age74AVPhSRVXJMd8PJS91L8KbNCK"
SPL_ACCOUNT_COMPRESSION_PROGRAM_ID = SPL_ACCOUNT_COMPRESSION_ADDRESS
SPL_NOOP_ADDRESS = "noopb9bkMVfRPU8AsbpTUg8AQkHtKwMYZiFUjNRtMmV"
SPL_NOOP_PROGRAM_ID = SPL_NOOP_ADDRESS

MAX_DEPTH = 30
MAX_BUFFER_SIZE = 2048

# (max_depth, max_buffer_size) pairs the on-chain program will allocate.
ALL_DEPTH_SIZE_PAIRS = (
    (3, 8),
    (5, 8),
    (6, 16),
    (7, 16),
    (8, 16),
    (9, 16),
    (10, 32),
    (11, 32),
    (12, 32),
    (13, 32),
    (14, 64),
    (14, 256),
    (14, 1024),
    (14, 2048),
    (15, 64),
    (16, 64),
    (17, 64),
    (18, 64),
    (19, 64),
    (20, 64),
    (20, 256),
    (20, 1024),
    (20, 2048),
    (24, 64),
    (24, 256),
    (24, 512),
    (24, 1024),
    (24, 2048),
    (26, 512),
    (26, 1024),
    (26, 2048),
    (30, 512),
    (30, 1024),
    (30, 2048),
)
