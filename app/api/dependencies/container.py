"""
Dependency for the composition root built at application startup.
"""
from fastapi import Request

from app.bootstrap import Container


def get_container(request: Request) -> Container:
    return request.app.state.container
