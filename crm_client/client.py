"""
客户端入口对象
把接口客户端、会话和各功能模块组合在一起
"""

from typing import Callable, Optional

from crm_client.api import ApiClient
from crm_client.backup import BackupClient
from crm_client.customers import CustomerClient
from crm_client.importer import CustomerImporter
from crm_client.session import SessionManager
from crm_client.state import StateStore
from crm_client.viewers import OperationLogViewer, UploadTaskViewer


class CrmClient:
    """
    客户管理系统客户端

    Args:
        base_url: 服务地址
        session: requests.Session 兼容对象
        state_file: 本地状态文件路径
        confirm: 危险操作的确认函数
        **importer_options: 传给 CustomerImporter 的参数
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        session=None,
        state_file: Optional[str] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        **importer_options
    ):
        self.state = StateStore(state_file)
        self.api = ApiClient(base_url, session=session, state=self.state)
        self.session = SessionManager(self.api)
        self.customers = CustomerClient(self.api, self.session)
        self.importer = CustomerImporter(self.api, self.session, self.state, **importer_options)
        self.backups = BackupClient(self.api, self.session, confirm=confirm)
        self.logs = OperationLogViewer(self.api, self.session)
        self.tasks = UploadTaskViewer(self.api, self.session)

    def login(self, username: str, password: str):
        return self.session.login(username, password)

    def logout(self):
        self.session.logout()
