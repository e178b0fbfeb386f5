# executor.py
import subprocess

from models import ExecutionResult


def run_command(command):
    """Run a shell command to completion. Never raises; failures come back as ok=False."""
    try:
        # Own session: a Ctrl+C aimed at the worker's process group must not
        # kill the job the worker is about to finish
        result = subprocess.run(
            command,
            shell=True,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
    except OSError as e:
        return ExecutionResult(ok=False, exit_code=127, output=str(e))

    output = (result.stdout or "") + (result.stderr or "")
    return ExecutionResult(ok=result.returncode == 0, exit_code=result.returncode, output=output)
