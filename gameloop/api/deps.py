from fastapi import Request

from gameloop.features.scheduler.jobs import Services


def get_services(request: Request) -> Services:
    return request.app.state.services
