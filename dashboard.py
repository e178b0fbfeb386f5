# dashboard.py
from html import escape

from fastapi import FastAPI
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from models import JOB_STATES

# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(160px,1fr)); gap: 16px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head><title>{escape(title)}</title><style>{BASE_STYLE}</style></head>
    <body>
      <h1>{escape(title)}</h1>
      <div class="navbar">
        <a href="/">Home</a>
        <a href="/dlq">DLQ</a>
        <a href="/workers">Workers</a>
      </div>
      <div class="container">{body_html}</div>
    </body>
    </html>
    """


def _cell(value) -> str:
    return escape("-" if value is None else str(value))


def _jobs_table(jobs, empty_message: str) -> str:
    if not jobs:
        return f"<p class='muted'>{escape(empty_message)}</p>"
    rows = "".join(
        f"<tr><td><a href='/job/{escape(j.id)}'>{escape(j.id)}</a></td><td>{_cell(j.command)}</td>"
        f"<td>{_cell(j.state)}</td><td>{j.attempts}/{j.max_retries}</td>"
        f"<td>{_cell(j.run_at)}</td><td>{_cell(j.locked_by)}</td><td>{_cell(j.last_error)}</td></tr>"
        for j in jobs
    )
    return (
        "<table><tr><th>ID</th><th>Command</th><th>State</th><th>Attempts</th>"
        f"<th>Run at</th><th>Locked by</th><th>Last error</th></tr>{rows}</table>"
    )


def create_app(db) -> FastAPI:
    """Build a read-only dashboard over an open Storage."""
    app = FastAPI(title="queuectl dashboard")

    @app.get("/", response_class=HTMLResponse)
    def home():
        counts = db.count_by_state()
        cards = "".join(
            f"<div class='card'><h3>{key}</h3><p>{counts[key]}</p></div>"
            for key in (*JOB_STATES, "workers")
        )
        body = f"<div class='cards'>{cards}</div><h2>Recent jobs</h2>"
        body += _jobs_table(db.list_jobs(limit=50), "No jobs in the system yet.")
        return page("queuectl", body)

    @app.get("/status.json", response_class=JSONResponse)
    def status_json():
        return db.count_by_state()

    @app.get("/dlq", response_class=HTMLResponse)
    def dlq_page():
        body = _jobs_table(db.list_dead_letter(limit=200), "No jobs in DLQ.")
        body += "<p class='muted'>Use `queuectl dlq retry &lt;id&gt;` to requeue.</p>"
        return page("Dead Letter Queue", body)

    @app.get("/workers", response_class=HTMLResponse)
    def workers_page():
        workers = db.list_workers()
        if not workers:
            return page("Workers", "<p class='muted'>No live workers.</p>")
        rows = "".join(
            f"<tr><td>{_cell(w.id)}</td><td>{_cell(w.pid)}</td>"
            f"<td>{_cell(w.started_at)}</td><td>{_cell(w.last_heartbeat)}</td></tr>"
            for w in workers
        )
        body = ("<table><tr><th>ID</th><th>PID</th><th>Started</th><th>Last heartbeat</th></tr>"
                f"{rows}</table>")
        return page("Workers", body)

    @app.get("/job/{job_id}", response_class=HTMLResponse)
    def job_detail(job_id: str):
        job = db.get_job(job_id)
        if job is None:
            return HTMLResponse(page("Job not found", f"<p>Job {escape(job_id)} not found.</p>"),
                                status_code=404)

        details = "".join(
            f"<tr><th>{key}</th><td>{_cell(value)}</td></tr>"
            for key, value in job.to_dict().items() if key != "output"
        )
        body = f"""
          <table>{details}</table>
          <h3>Output</h3>
          <pre>{escape(job.output or "(no output)")}</pre>
          <p><a href="/job/{escape(job.id)}/output">Download output</a></p>
        """
        return page(f"Job {job.id}", body)

    @app.get("/job/{job_id}/output", response_class=PlainTextResponse)
    def job_output(job_id: str):
        job = db.get_job(job_id)
        if job is None:
            return PlainTextResponse("not found", status_code=404)
        return PlainTextResponse(job.output or "(no output)")

    return app
