"""
客户管理系统客户端
"""

from crm_client.client import CrmClient
from crm_client.errors import (
    ApiError,
    AuthenticationError,
    PermissionDeniedError,
    NotFoundError,
    ValidationError,
    GatewayTimeoutError,
    NetworkError,
    RequestTimeoutError,
    ImportFailedError,
    ImportCancelledError,
    ImportTimeoutError
)
from crm_client.importer import CustomerImporter, ImportStage
from crm_client.models import Customer, UploadTask, OperationLog, BackupFile, UserSession, Page

__all__ = [
    'CrmClient',
    'CustomerImporter',
    'ImportStage',
    'Customer',
    'UploadTask',
    'OperationLog',
    'BackupFile',
    'UserSession',
    'Page',
    'ApiError',
    'AuthenticationError',
    'PermissionDeniedError',
    'NotFoundError',
    'ValidationError',
    'GatewayTimeoutError',
    'NetworkError',
    'RequestTimeoutError',
    'ImportFailedError',
    'ImportCancelledError',
    'ImportTimeoutError',
]
