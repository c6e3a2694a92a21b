"""Default pipeline settings."""

DEFAULTS = {
    # Orchestrator
    "max_iterations": 20,          # hard cap on handler invocations per run
    "max_review_retries": 2,       # reviewer rejections allowed per plan step
    "step_delay": 0.1,             # seconds to yield between steps

    # Admission control
    "namespace": "stepsmith",
    "epoch_seconds": 60,
    "counter_ttl": 65,             # slightly over one epoch
    "epoch_buffer": 0.1,           # seconds past the boundary before re-trying
    "admission_max_waits": 10,
    "admission_queue_poll": 0.25,
    "admission_max_queue_polls": 240,

    # Retry supervision
    "retry_attempts": 3,
    "throttle_backoff": 10,

    # Models
    "model": "claude-sonnet-4-5-20250929",
    "max_tokens": 4096,

    # Editing / retrieval
    "chunk_context_lines": 5,
    "diff_context_lines": 3,
    "search_top_k": 5,
}
