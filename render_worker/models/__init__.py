from render_worker.models.job import (
    AssetRef,
    HistoryEntry,
    JobRecord,
    JobStateMachine,
    JobStatus,
    PipelineStep,
    STEP_ORDER,
    StepOutcome,
    TERMINAL_STATUSES,
    VideoRequest,
)
