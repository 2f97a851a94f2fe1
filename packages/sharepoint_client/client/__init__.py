"""Clients for the Microsoft Graph API."""

from sharepoint_client.client.client import AsyncClient

__all__ = ['AsyncClient']
