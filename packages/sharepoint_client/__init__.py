"""SharePoint data API for the transport records application."""

from sharepoint_client.api import SharePointDataApi
from sharepoint_client.bootstrap import LoginController, LoginPageAction, SessionBootstrap
from sharepoint_client.client import AsyncClient

__all__ = [
    'AsyncClient',
    'LoginController',
    'LoginPageAction',
    'SessionBootstrap',
    'SharePointDataApi',
]
