from sharepoint_client.client.methods_mixin.oauth import AsyncOAuthSessionMixin

__all__ = ['AsyncOAuthSessionMixin']
