"""Convenience entry point for running Celery worker.

Most deployments will invoke the standard Celery CLI, but keeping a small
script makes local testing or Procfile-style runners straightforward.
"""
from __future__ import annotations

from .config.celery import celery_app


def main() -> None:
    celery_app.worker_main(
        argv=["worker", "--hostname=worker@%h", "--loglevel=INFO", "--queues=high,default,low"]
    )


if __name__ == "__main__":
    main()
