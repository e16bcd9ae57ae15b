import asyncio
import sys

from dataclasses import dataclass
from typing import Annotated

import cappa
import granian

from cappa.output import error_format
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text
from watchfiles import PythonFilter

from backend import __version__, load_all_models
from backend.core.conf import settings
from backend.core.log import setup_logging
from backend.database.db import create_tables, drop_tables
from backend.database.redis import redis_client
from backend.src.billing.shared.cache_utils import CREDIT_BALANCE_KEY_PREFIX
from backend.src.billing.shared.exceptions import BillingError
from backend.utils.console import console

output_help = '\nFor more information, try "[cyan]--help[/]"'


class CustomReloadFilter(PythonFilter):
    """Custom reload filter"""

    def __init__(self) -> None:
        super().__init__(extra_extensions=['.json', '.yaml', '.yml'])


async def init(*, rebuild: bool) -> None:
    panel_content = Text()
    panel_content.append('Database configuration', style='bold green')
    panel_content.append('\n\n  • Type: ')
    panel_content.append(f'{settings.DATABASE_TYPE}', style='yellow')
    panel_content.append('\n  • Database: ')
    panel_content.append(f'{settings.DATABASE_SCHEMA}', style='yellow')
    panel_content.append('\n\nCredits', style='bold green')
    panel_content.append('\n\n  • Initial grant: ')
    panel_content.append(f'{settings.CREDIT_INITIAL_GRANT}', style='yellow')
    panel_content.append('\n  • Balance cache: ')
    panel_content.append(
        'enabled' if settings.CREDIT_BALANCE_CACHE_ENABLED else 'disabled',
        style='yellow' if settings.CREDIT_BALANCE_CACHE_ENABLED else 'dim',
    )

    console.print(Panel(panel_content, title=f'credit-core v{__version__} initialization', border_style='cyan', padding=(1, 2)))

    load_all_models()
    if rebuild:
        ok = Prompt.ask(
            'Are you sure to drop and rebuild the credit tables? All ledger data will be lost', choices=['y', 'n'], default='n'
        )
        if ok.lower() != 'y':
            console.print('Initialization cancelled', style='yellow')
            return

    console.print('Initializing...', style='white')
    try:
        if rebuild:
            console.print('Dropping database tables', style='white')
            await drop_tables()
            if settings.CREDIT_BALANCE_CACHE_ENABLED:
                console.print('Dropping Redis balance cache', style='white')
                await redis_client.delete_prefix(CREDIT_BALANCE_KEY_PREFIX)
        console.print('Creating database tables', style='white')
        await create_tables()
        console.print('Initialization completed', style='green')
        console.print('\nTry [bold cyan]credit-core run[/bold cyan] to start the service')
    except Exception as e:
        raise cappa.Exit(f'Initialization failed: {e}', code=1)


def run(host: str, port: int, reload: bool, workers: int) -> None:  # noqa: FBT001
    url = f'http://{host}:{port}'
    docs_url = url + settings.FASTAPI_DOCS_URL
    redoc_url = url + settings.FASTAPI_REDOC_URL
    openapi_url = url + (settings.FASTAPI_OPENAPI_URL or '')

    panel_content = Text()
    panel_content.append('Python version:', style='bold cyan')
    panel_content.append(f'{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}', style='white')

    panel_content.append('\nAPI request address: ', style='bold cyan')
    panel_content.append(f'{url}{settings.FASTAPI_API_V1_PATH}', style='blue')

    panel_content.append('\n\nEnvironment mode: ', style='bold green')
    env_style = 'yellow' if settings.ENVIRONMENT == 'dev' else 'green'
    panel_content.append(f'{settings.ENVIRONMENT.upper()}', style=env_style)

    if settings.ENVIRONMENT == 'dev':
        panel_content.append(f'\n\n📖 Swagger docs: {docs_url}', style='bold magenta')
        panel_content.append(f'\n📚 Redoc docs: {redoc_url}', style='bold magenta')
        panel_content.append(f'\n📡 OpenAPI JSON: {openapi_url}', style='bold magenta')

    console.print(Panel(panel_content, title=f'credit-core v{__version__}', border_style='purple', padding=(1, 2)))
    granian.Granian(
        target='backend.main:app',
        interface='asgi',
        address=host,
        port=port,
        reload=not reload,
        reload_filter=CustomReloadFilter,
        workers=workers,
    ).serve()


async def reconcile(older_than_minutes: int | None) -> None:
    from backend.src.billing.payments import reconciliation_service

    load_all_models()
    try:
        report = await reconciliation_service.run_full_reconciliation(older_than_minutes)
    except BillingError as e:
        raise cappa.Exit(f'Reconciliation failed: {e.message}', code=1)

    balances = report['balances']
    console.print(f'Checked {balances["checked"]} accounts', style='white')

    if balances['discrepancies_found']:
        table = Table(title='Balance discrepancies', show_header=True, header_style='bold magenta')
        table.add_column('Account', style='cyan', no_wrap=True)
        table.add_column('Balance', justify='right')
        table.add_column('Ledger total', justify='right')
        table.add_column('Difference', style='red', justify='right')
        for item in balances['discrepancies_found']:
            table.add_row(
                item['account_id'],
                str(item['balance']),
                str(item['ledger_total']),
                f'{item["difference"]:+d}',
            )
        console.print(table)

    if report['unresolved_debits']:
        table = Table(title='Unresolved debits', show_header=True, header_style='bold magenta')
        table.add_column('Transaction', style='cyan', no_wrap=True)
        table.add_column('Account', style='green', no_wrap=True)
        table.add_column('Amount', justify='right')
        table.add_column('Description', style='yellow')
        table.add_column('Created at', style='blue')
        for item in report['unresolved_debits']:
            table.add_row(
                item['transaction_id'],
                item['account_id'],
                str(item['amount']),
                item['description'],
                item['created_at'] or '',
            )
        console.print(table)

    if report['healthy']:
        console.print('Ledger is consistent', style='bold green')
    else:
        raise cappa.Exit('Ledger discrepancies found', code=2)


async def adjust(account_id: str, delta: int, description: str | None) -> None:
    from backend.src.billing.credits.integration import billing_integration

    load_all_models()
    try:
        new_balance = await billing_integration.adjust_balance_admin(account_id, delta, description)
    except BillingError as e:
        raise cappa.Exit(f'Adjustment failed: {e.message}', code=1)
    console.print(
        Text.assemble(
            ('Adjusted ', 'white'),
            (account_id, 'bold cyan'),
            (f' by {delta:+d} credits, new balance ', 'white'),
            (str(new_balance), 'bold green'),
        )
    )


@cappa.command(help='Initialize credit-core database tables', default_long=True)
@dataclass
class Init:
    rebuild: Annotated[
        bool,
        cappa.Arg(default=False, help='Drop existing tables before creating them'),
    ]

    async def __call__(self) -> None:
        await init(rebuild=self.rebuild)


@cappa.command(help='Run API service', default_long=True)
@dataclass
class Run:
    host: Annotated[
        str,
        cappa.Arg(
            default='127.0.0.1',
            help='提供服务的主机 IP 地址，对于本地开发，请使用 `127.0.0.1`。'
            '要启用公共访问，例如在局域网中，请使用 `0.0.0.0`',
        ),
    ]
    port: Annotated[
        int,
        cappa.Arg(default=8000, help='提供服务的主机端口号'),
    ]
    no_reload: Annotated[
        bool,
        cappa.Arg(default=False, help='禁用在（代码）文件更改时自动重新加载服务器'),
    ]
    workers: Annotated[
        int,
        cappa.Arg(default=1, help='使用多个工作进程，必须与 `--no-reload` 同时使用'),
    ]

    def __call__(self) -> None:
        run(host=self.host, port=self.port, reload=self.no_reload, workers=self.workers)


@cappa.command(help='Check balances against the ledger and report unresolved debits', default_long=True)
@dataclass
class Reconcile:
    older_than_minutes: Annotated[
        int | None,
        cappa.Arg(default=None, help='Only report debits older than this many minutes'),
    ] = None

    async def __call__(self) -> None:
        await reconcile(self.older_than_minutes)


@cappa.command(help='Add or remove credits on an account')
@dataclass
class Adjust:
    account_id: Annotated[str, cappa.Arg(help='Account to adjust')]
    delta: Annotated[int, cappa.Arg(help='Credits to add (negative to remove)')]
    description: Annotated[
        str | None,
        cappa.Arg(long=True, default=None, help='Audit description'),
    ] = None

    async def __call__(self) -> None:
        await adjust(self.account_id, self.delta, self.description)


@cappa.command(help='Credit accounting core command line interface', default_long=True)
@dataclass
class CreditCoreCli:
    subcmd: cappa.Subcommands[Init | Run | Reconcile | Adjust]


def main() -> None:
    setup_logging()
    output = cappa.Output(error_format=f'{error_format}\n{output_help}')
    asyncio.run(cappa.invoke_async(CreditCoreCli, version=__version__, output=output))
