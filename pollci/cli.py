#!/usr/bin/env python3
"""
PollCI command line.

    pollci poll              run one poll tick and wait for its builds
    pollci build NAME        request a build and run it now
    pollci add NAME URL      add and check out a project
    pollci remove NAME       remove a project and its working copy
    pollci list              show projects and their latest build
    pollci serve             start the web dashboard and the scheduler
"""

import argparse
import logging
import sys

from .database import Base, SessionLocal, engine
from .exceptions import PollCIError
from .models import BuildStatus, Project
from .orchestrator import Orchestrator
from .project_config import ProjectConfig
from .services.project_service import ProjectService
from .settings import LOG_LEVEL

logger = logging.getLogger("PollCI")


def find_project(db, name: str) -> Project:
    project = db.query(Project).filter(Project.name == name).first()
    if project is None:
        raise PollCIError(f"No project named {name}")
    return project


def cmd_poll(args):
    orchestrator = Orchestrator()
    try:
        orchestrator.poll(block=True)
    finally:
        orchestrator.shutdown()


def cmd_build(args):
    db = SessionLocal()
    try:
        project = find_project(db, args.name)
        service = ProjectService(db)
        service.force_build(project)
        build = service.run_build(project)
        if build is None:
            print(f"{project.name}: nothing to build")
            return 0
        print(f"{project.name} #{build.number}: {build.status}")
        return 0 if build.status == BuildStatus.SUCCESS else 1
    finally:
        db.close()


def cmd_add(args):
    db = SessionLocal()
    try:
        config = ProjectConfig(frequency=args.frequency, task=args.task)
        project = ProjectService(db).add_project(
            name=args.name,
            url=args.url,
            branch=args.branch,
            custom_command=args.command,
            config=config,
        )
        print(f"Added {project.name}")
    finally:
        db.close()


def cmd_remove(args):
    db = SessionLocal()
    try:
        ProjectService(db).remove_project(find_project(db, args.name))
        print(f"Removed {args.name}")
    finally:
        db.close()


def cmd_list(args):
    db = SessionLocal()
    try:
        for project in db.query(Project).order_by(Project.name).all():
            latest = project.latest_build_summary()
            number = f"#{latest['number']}" if latest["number"] else "-"
            print(f"{project.name:30} {project.branch:15} {number:>6} {latest['status']}")
    finally:
        db.close()


def cmd_serve(args):
    import uvicorn
    uvicorn.run("pollci.main:app", host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pollci", description="Polling continuous integration server")
    subparsers = parser.add_subparsers(dest="subcommand", required=True)

    subparsers.add_parser("poll", help="Run one poll tick").set_defaults(func=cmd_poll)

    build = subparsers.add_parser("build", help="Force a build of a project")
    build.add_argument("name")
    build.set_defaults(func=cmd_build)

    add = subparsers.add_parser("add", help="Add a project")
    add.add_argument("name")
    add.add_argument("url")
    add.add_argument("--branch", default="master")
    add.add_argument("--command", default=None, help="Custom build command")
    add.add_argument("--task", default="default")
    add.add_argument("--frequency", type=int, default=20, help="Seconds between checks")
    add.set_defaults(func=cmd_add)

    remove = subparsers.add_parser("remove", help="Remove a project")
    remove.add_argument("name")
    remove.set_defaults(func=cmd_remove)

    subparsers.add_parser("list", help="List projects").set_defaults(func=cmd_list)

    serve = subparsers.add_parser("serve", help="Start the web dashboard")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=LOG_LEVEL)
    Base.metadata.create_all(bind=engine)

    try:
        return args.func(args) or 0
    except PollCIError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
