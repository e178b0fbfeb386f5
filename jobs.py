# jobs.py
import json
import secrets
import string
from datetime import timedelta

from config import get_defaults, validate_policy
from errors import ValidationError

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_id(prefix="", size=16):
    return prefix + "".join(secrets.choice(_ID_ALPHABET) for _ in range(size))


def parse_job_spec(text):
    """
    Accept either a JSON object ({"command": ..., "id": ..., "max_retries": ...})
    or a plain shell command string.
    """
    try:
        spec = json.loads(text)
    except ValueError:
        return {"command": text}
    if not isinstance(spec, dict):
        return {"command": text}
    if not spec.get("command"):
        raise ValidationError("JSON job must include a command")
    return spec


def enqueue(storage, command, job_id=None, max_retries=None, backoff_base=None, delay_seconds=None):
    if command is None or not str(command).strip():
        raise ValidationError("command must not be empty")
    if job_id is not None and not str(job_id).strip():
        raise ValidationError("job id must not be empty")

    defaults = get_defaults(storage)
    max_retries = validate_policy(
        "max_retries", defaults["max_retries"] if max_retries is None else max_retries
    )
    backoff_base = validate_policy(
        "backoff_base", defaults["backoff_base"] if backoff_base is None else backoff_base
    )

    run_at = None
    if delay_seconds:
        if delay_seconds < 0:
            raise ValidationError("delay must be non-negative")
        run_at = storage.now() + timedelta(seconds=delay_seconds)

    return storage.insert_job(
        job_id or new_id(),
        str(command),
        max_retries=max_retries,
        backoff_base=backoff_base,
        run_at=run_at,
    )
