from typing import Annotated

from fastapi import Depends, Request

from app.core.config import Settings
from app.services.container import Services


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_services(request: Request) -> Services:
    return request.app.state.services


AppSettings = Annotated[Settings, Depends(get_app_settings)]
AppServices = Annotated[Services, Depends(get_services)]
