from fastapi import FastAPI, Request, Depends, Form, HTTPException, BackgroundTasks
from fastapi.templating import Jinja2Templates
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session
from apscheduler.schedulers.background import BackgroundScheduler
import uvicorn
import logging
import os

from .database import engine, Base, get_db
from .exceptions import CheckoutError, ConfigurationError
from .models import Project
from .orchestrator import Orchestrator
from .project_config import ProjectConfig
from .services.project_service import ProjectService
from .settings import LOG_LEVEL, POLL_INTERVAL_SECONDS

# Initialize Database
Base.metadata.create_all(bind=engine)

# Logging Setup
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("PollCI")

app = FastAPI(title="PollCI")

templates = Jinja2Templates(directory=os.path.join(os.path.dirname(__file__), "templates"))

scheduler = BackgroundScheduler()
orchestrator = Orchestrator()


def get_project(project_id: int, db: Session) -> Project:
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project

# --- Lifecycle Events ---

@app.on_event("startup")
def startup_event():
    scheduler.add_job(orchestrator.poll, 'interval', seconds=POLL_INTERVAL_SECONDS, max_instances=1)
    scheduler.start()
    logger.info(f"Scheduler started, polling every {POLL_INTERVAL_SECONDS}s.")

@app.on_event("shutdown")
def shutdown_event():
    scheduler.shutdown()
    orchestrator.shutdown()

# --- Routes ---

@app.get("/", response_class=HTMLResponse)
def dashboard(request: Request, db: Session = Depends(get_db)):
    projects = db.query(Project).order_by(Project.name).all()
    rows = [(project, project.latest_build_summary()) for project in projects]
    return templates.TemplateResponse("index.html", {
        "request": request,
        "rows": rows,
    })

@app.post("/projects")
def add_project(
    name: str = Form(...),
    url: str = Form(...),
    branch: str = Form("master"),
    custom_command: str = Form(""),
    frequency: int = Form(20),
    background_tasks: BackgroundTasks = None,
    db: Session = Depends(get_db),
):
    service = ProjectService(db)
    try:
        service.add_project(
            name=name,
            url=url,
            branch=branch,
            custom_command=custom_command,
            config=ProjectConfig(frequency=frequency),
        )
    except (ConfigurationError, CheckoutError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    # First build happens on the next tick; run one now instead of waiting
    if background_tasks is not None:
        background_tasks.add_task(orchestrator.poll)

    return RedirectResponse(url="/", status_code=303)

@app.post("/projects/{project_id}/delete")
def delete_project(project_id: int, db: Session = Depends(get_db)):
    project = get_project(project_id, db)
    ProjectService(db).remove_project(project)
    return RedirectResponse(url="/", status_code=303)

@app.post("/projects/{project_id}/build")
def force_build(project_id: int):
    if not orchestrator.force_build(project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    return RedirectResponse(url="/", status_code=303)

@app.get("/projects/{project_id}/builds")
def list_builds(project_id: int, db: Session = Depends(get_db)):
    project = get_project(project_id, db)
    return [
        {
            "number": build.number,
            "status": build.status,
            "revision": build.revision,
            "previous_build_revision": build.previous_build_revision,
            "change_list": build.change_list,
            "authors": build.authors,
            "environment_string": build.environment_string,
            "toolchain_version": build.toolchain_version,
            "timestamp": build.timestamp.isoformat() if build.timestamp else None,
        }
        for build in reversed(project.builds)
    ]

@app.get("/projects/{project_id}/builds/{number}/log")
def build_log(project_id: int, number: int, db: Session = Depends(get_db)):
    project = get_project(project_id, db)
    for build in project.builds:
        if build.number == number:
            return {"number": build.number, "status": build.status, "log": build.log or ""}
    raise HTTPException(status_code=404, detail="Build not found")

@app.post("/projects/trigger")
def trigger_now(background_tasks: BackgroundTasks):
    background_tasks.add_task(orchestrator.poll)
    return RedirectResponse(url="/", status_code=303)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
