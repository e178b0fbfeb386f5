class QueueError(Exception):
    """Base exception for queuectl errors."""
    pass


class ValidationError(QueueError):
    pass


class DuplicateJobError(QueueError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} already exists")


class JobNotFoundError(QueueError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidJobStateError(QueueError):
    def __init__(self, job_id, current_state, expected_state):
        self.job_id = job_id
        self.current_state = current_state
        self.expected_state = expected_state
        super().__init__(
            f"Job {job_id} is {current_state}, expected {expected_state}"
        )
