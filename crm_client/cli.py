"""
命令行客户端

示例：
    crm-client login admin admin123
    crm-client list --page 2
    crm-client import 客户.xlsx
    crm-client backup restore backups/customer_db_backup_20250101_120000.sql
"""

import argparse
import logging
import sys
from typing import Iterable, List, Sequence

from crm_client import config
from crm_client.client import CrmClient
from crm_client.errors import ApiError, ImportFailedError
from crm_client.importer import ImportStage

logger = logging.getLogger(__name__)


# ==================== 输出 ====================

def print_table(headers: Sequence[str], rows: Iterable[Sequence], out=None):
    """按列宽对齐输出纯文本表格"""
    out = out or sys.stdout
    rows = [["" if value is None else str(value) for value in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in rows:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))
    print("  ".join(h.ljust(widths[i]) for i, h in enumerate(headers)), file=out)
    print("  ".join("-" * w for w in widths), file=out)
    for row in rows:
        print("  ".join(value.ljust(widths[i]) for i, value in enumerate(row)), file=out)


def print_page(page, headers, to_row, out=None):
    print_table(headers, [to_row(item) for item in page.items], out)
    print(f"第 {page.page}/{max(page.total_pages, 1)} 页，共 {page.total} 条", file=out or sys.stdout)


CUSTOMER_HEADERS = ["ID", "姓名", "电话", "邮箱", "地址", "导入文件", "备注"]
TASK_HEADERS = ["ID", "文件名", "总数", "新增", "已存在", "失败", "状态", "上传时间", "完成时间"]
LOG_HEADERS = ["ID", "用户", "操作", "模块", "描述", "IP", "结果", "时间"]


def customer_row(c):
    return [c.id, c.name, c.phone, c.email, c.address, c.uploadFileName, c.remarks]


def task_row(t):
    return [t.id, t.fileName, t.totalCount, t.addedCount, t.existingCount, t.errorCount,
            t.status, t.uploadTime, t.completeTime]


def log_row(entry):
    return [entry.id, entry.username, entry.operation, entry.module, entry.description,
            entry.ipAddress, entry.result, entry.operationTime]


def confirm_prompt(message: str) -> bool:
    answer = input(f"{message} [y/N] ").strip().lower()
    return answer in ("y", "yes")


# ==================== 子命令 ====================

def cmd_login(client: CrmClient, args):
    user = client.login(args.username, args.password)
    print(f"登录成功: {user.display_name}（{user.role_label}）")


def cmd_logout(client: CrmClient, args):
    client.logout()
    print("已登出")


def cmd_whoami(client: CrmClient, args):
    user = client.session.current(refresh=True)
    print(f"{user.username} {user.display_name}（{user.role_label}）")


def cmd_list(client: CrmClient, args):
    print_page(client.customers.list(args.page, args.page_size), CUSTOMER_HEADERS, customer_row)


def cmd_search(client: CrmClient, args):
    if any([args.name, args.phone, args.email, args.address, args.start, args.end, args.task]):
        page = client.customers.advanced_search(
            name=args.name, phone=args.phone, email=args.email, address=args.address,
            start_time=args.start, end_time=args.end, upload_task_id=args.task,
            page=args.page, page_size=args.page_size
        )
    else:
        page = client.customers.search(args.keyword, args.page, args.page_size)
    print_page(page, CUSTOMER_HEADERS, customer_row)


def cmd_show(client: CrmClient, args):
    print_table(CUSTOMER_HEADERS, [customer_row(client.customers.get(args.id))])


def cmd_count(client: CrmClient, args):
    print(f"客户总数: {client.customers.count()}，今日新增: {client.customers.count_today()}")


def cmd_add(client: CrmClient, args):
    customer = client.customers.create(args.name, args.phone, args.email, args.address)
    print(f"已创建客户: {customer.id} {customer.name}")


def cmd_update(client: CrmClient, args):
    customer = client.customers.update(args.id, args.name, args.phone, args.email, args.address)
    print(f"已更新客户: {customer.id} {customer.name}")


def cmd_delete(client: CrmClient, args):
    if not args.yes and not confirm_prompt(f"确定要删除 {len(args.ids)} 个客户吗？"):
        print("已取消")
        return
    if len(args.ids) == 1:
        client.customers.delete(args.ids[0])
        print("删除成功")
    else:
        print(f"成功删除 {client.customers.batch_delete(args.ids)} 个客户")


def cmd_remark(client: CrmClient, args):
    if args.clear:
        client.customers.delete_remark(args.id)
        print("备注已删除")
    elif args.text is not None:
        saved = client.customers.save_remark(args.id, args.text)
        print("备注已保存" if saved else "备注已清除")
    else:
        print(client.customers.get_remark(args.id) or "（无备注）")


def cmd_batch_query(client: CrmClient, args):
    if args.file == "-":
        text = sys.stdin.read()
    else:
        with open(args.file, "r", encoding="utf-8") as f:
            text = f.read()
    results = client.customers.batch_query_text(text)
    rows = []
    for r in results:
        query = " ".join(v for v in r.queryItem.values() if v)
        if r.matched:
            rows.append([query, "是"] + customer_row(r.customer)[:5] + [r.uploadFileName])
        else:
            rows.append([query, "否", "", "", "", "", "", ""])
    print_table(["查询条件", "匹配"] + CUSTOMER_HEADERS[:5] + ["导入文件"], rows)
    print(f"匹配 {sum(1 for r in results if r.matched)}/{len(results)} 条")


def cmd_export(client: CrmClient, args):
    print(f"已导出: {client.customers.export_csv(args.path)}")


def _progress(uploaded: int, total: int):
    print(f"\r上传中 {uploaded}/{total} 块", end="", flush=True)
    if uploaded == total:
        print()


def _stage(stage: ImportStage):
    labels = {
        ImportStage.VALIDATING: "正在校验文件...",
        ImportStage.UPLOADING: "正在上传文件...",
        ImportStage.MERGING: "正在合并文件...",
        ImportStage.POLLING: "上传完成，正在处理数据...",
    }
    if stage in labels:
        print(labels[stage])


def print_task_result(task):
    print(f"导入结束（{task.status}）：新增 {task.addedCount} 条，已存在 {task.existingCount} 条，"
          f"失败 {task.errorCount} 条")


def cmd_import(client: CrmClient, args):
    importer = client.importer
    importer.on_progress = _progress
    importer.on_stage = _stage
    try:
        if len(args.files) == 1:
            print_task_result(importer.import_file(args.files[0]))
        else:
            summary = importer.import_files(args.files)
            for task in summary.tasks:
                print(f"{task.fileName}: ", end="")
                print_task_result(task)
            for path, error in summary.failed_files.items():
                print(f"{path}: 上传失败 {error}")
            print(f"合计：新增 {summary.added} 条，已存在 {summary.existing} 条，失败 {summary.errors} 条")
    except KeyboardInterrupt:
        importer.cancel()
        print("\n导入已取消")


def cmd_resume(client: CrmClient, args):
    task = client.importer.resume()
    if task is None:
        print("没有处理中的导入任务")
    else:
        print_task_result(task)


def cmd_template(client: CrmClient, args):
    print(f"模板已下载: {client.importer.download_template(args.path)}")


def cmd_tasks(client: CrmClient, args):
    tasks = client.tasks
    if args.delete:
        if not args.yes and not confirm_prompt(f"确定要删除 {len(args.delete)} 个任务吗？"):
            print("已取消")
            return
        print(f"成功删除 {tasks.batch_delete(args.delete)} 个任务")
    elif args.remark:
        task_id, remarks = args.remark
        tasks.update_remark(int(task_id), remarks)
        print("备注已保存")
    else:
        print_page(tasks.list(args.page, args.page_size), TASK_HEADERS, task_row)


def cmd_logs(client: CrmClient, args):
    logs = client.logs
    if args.cleanup is not None:
        print(f"已清理 {logs.cleanup(args.cleanup)} 条日志")
        return
    filters = dict(username=args.username, operation=args.operation, module=args.module,
                   start_time=args.start, end_time=args.end)
    if any(filters.values()):
        page = logs.search(page=args.page, page_size=args.page_size, **filters)
    else:
        page = logs.list(args.page, args.page_size)
    print_page(page, LOG_HEADERS, log_row)


def cmd_backup(client: CrmClient, args):
    backups = client.backups
    if args.action == "create":
        backup = backups.create()
        print(f"备份已创建: {backup.fileName}（{backup.fileSize} 字节）")
    elif args.action == "list":
        print_table(["文件名", "大小", "创建时间"],
                    [[b.fileName, b.fileSize, b.createTime] for b in backups.list()])
    elif args.action == "download":
        print(f"已下载: {backups.download(args.target, args.output)}")
    elif args.action == "restore":
        executed = backups.restore(args.target)
        print("已取消恢复" if executed is None else f"数据库已恢复，执行 {executed} 条语句")
    elif args.action == "delete":
        print("备份已删除" if backups.delete(args.target) else "已取消删除")


# ==================== 参数 ====================

def _add_paging(parser):
    parser.add_argument("--page", type=int, default=1, help="页码，从 1 开始")
    parser.add_argument("--page-size", type=int, default=20, help="每页数量")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crm-client", description="客户管理系统命令行客户端")
    parser.add_argument("--base-url", default=config.BASE_URL, help="服务地址")
    parser.add_argument("--state-file", default=config.STATE_FILE, help="本地状态文件")
    parser.add_argument("--yes", "-y", action="store_true", help="跳过确认")
    parser.add_argument("--verbose", "-v", action="store_true", help="输出调试日志")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("login", help="登录")
    p.add_argument("username")
    p.add_argument("password")
    p.set_defaults(func=cmd_login)

    sub.add_parser("logout", help="登出").set_defaults(func=cmd_logout)
    sub.add_parser("whoami", help="当前用户").set_defaults(func=cmd_whoami)
    sub.add_parser("count", help="客户数量").set_defaults(func=cmd_count)

    p = sub.add_parser("list", help="客户列表")
    _add_paging(p)
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("search", help="搜索客户（带过滤条件时为高级搜索）")
    p.add_argument("keyword", nargs="?", default="")
    p.add_argument("--name")
    p.add_argument("--phone")
    p.add_argument("--email")
    p.add_argument("--address")
    p.add_argument("--start", help="创建时间起，如 2025-01-01")
    p.add_argument("--end", help="创建时间止")
    p.add_argument("--task", type=int, help="导入任务 ID")
    _add_paging(p)
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("show", help="查看客户")
    p.add_argument("id", type=int)
    p.set_defaults(func=cmd_show)

    for name, func, help_text in (("add", cmd_add, "新增客户"), ("update", cmd_update, "修改客户")):
        p = sub.add_parser(name, help=help_text)
        if name == "update":
            p.add_argument("id", type=int)
        p.add_argument("name")
        p.add_argument("--phone")
        p.add_argument("--email")
        p.add_argument("--address")
        p.set_defaults(func=func)

    p = sub.add_parser("delete", help="删除客户")
    p.add_argument("ids", type=int, nargs="+")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("remark", help="查看或修改客户备注")
    p.add_argument("id", type=int)
    p.add_argument("text", nargs="?")
    p.add_argument("--clear", action="store_true", help="删除备注")
    p.set_defaults(func=cmd_remark)

    p = sub.add_parser("batch-query", help="批量查询，每行：电话 | 姓名 电话 | 姓名 电话 地址")
    p.add_argument("file", help="输入文件，- 表示标准输入")
    p.set_defaults(func=cmd_batch_query)

    p = sub.add_parser("export", help="导出客户 CSV")
    p.add_argument("path", nargs="?")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", help="导入客户（xlsx/csv）")
    p.add_argument("files", nargs="+")
    p.set_defaults(func=cmd_import)

    sub.add_parser("resume", help="继续跟踪未完成的导入").set_defaults(func=cmd_resume)

    p = sub.add_parser("template", help="下载导入模板")
    p.add_argument("path", nargs="?", default="客户导入模板.xlsx")
    p.set_defaults(func=cmd_template)

    p = sub.add_parser("tasks", help="上传任务")
    p.add_argument("--delete", type=int, nargs="+", metavar="ID", help="删除任务")
    p.add_argument("--remark", nargs=2, metavar=("ID", "TEXT"), help="修改任务备注")
    _add_paging(p)
    p.set_defaults(func=cmd_tasks)

    p = sub.add_parser("logs", help="操作日志（管理员）")
    p.add_argument("--username")
    p.add_argument("--operation")
    p.add_argument("--module")
    p.add_argument("--start")
    p.add_argument("--end")
    p.add_argument("--cleanup", type=int, metavar="DAYS", help="清理 DAYS 天之前的日志")
    _add_paging(p)
    p.set_defaults(func=cmd_logs)

    p = sub.add_parser("backup", help="数据库备份（管理员）")
    p.add_argument("action", choices=["create", "list", "download", "restore", "delete"])
    p.add_argument("target", nargs="?", help="备份文件名或本地 .sql 路径")
    p.add_argument("--output", "-o", help="下载保存位置")
    p.set_defaults(func=cmd_backup)

    return parser


def main(argv: List[str] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.command == "backup" and args.action in ("download", "restore", "delete") and not args.target:
        parser.error(f"backup {args.action} 需要指定文件")

    confirm = (lambda message: True) if args.yes else confirm_prompt
    client = CrmClient(args.base_url, state_file=args.state_file, confirm=confirm)
    try:
        args.func(client, args)
    except (ApiError, ImportFailedError) as e:
        print(f"错误: {getattr(e, 'message', None) or e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
