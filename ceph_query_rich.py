#!/usr/bin/env python3
"""
Ceph Query Tool - Rich + Pandas Frontend

Uses the pure Python ceph_query_core module for data collection and the
command table of the plain frontend.
Requires: rich, pandas, openpyxl

Usage:
    ceph-query-rich hosts-usage
    ceph-query-rich --export-excel usage.xlsx hosts-usage
    ceph-query-rich -d image-hosts rbd vm-disk-1

Install dependencies:
    pip install rich pandas openpyxl
"""

import sys
import argparse

import pandas as pd
from rich.console import Console
from rich.table import Table
from rich import box
from rich.markup import escape

import ceph_query_core
from ceph_query_core import VERSION, CephQueryError, UsageError
from ceph_query import QueryArgumentParser, commands_help, execute


def build_dataframe(rows, command):
    """Build a DataFrame from result rows; raw listings get one column named after the command."""
    if rows and all(isinstance(row, dict) for row in rows):
        return pd.DataFrame(rows)
    return pd.DataFrame({command: rows})


def display_rich_output(console, df, command):
    """Render the result rows as a table."""
    table = Table(
        title=f"ceph-query: {command}",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold cyan",
        border_style="blue",
        title_style="bold magenta"
    )

    for column in df.columns:
        numeric = pd.api.types.is_numeric_dtype(df[column])
        table.add_column(str(column), justify="right" if numeric else "left",
                         style="cyan" if column in ('Host', 'OSD', 'PG') else None)

    for record in df.itertuples(index=False):
        cells = []
        for column, value in zip(df.columns, record):
            if column == 'Role' and value == 'primary':
                cells.append(f"[bold green]{value}[/bold green]")
            elif isinstance(value, str) and value == 'none':
                cells.append("[dim]none[/dim]")
            else:
                cells.append(escape(str(value)))
        table.add_row(*cells)

    console.print(table)
    console.print(f"[dim]{len(df)} row(s)[/dim]")


def export_data(console, df, csv_file=None, json_file=None, excel_file=None, sheet='Result'):
    """Export result rows to CSV, JSON and/or Excel."""
    if csv_file:
        df.to_csv(csv_file, index=False)
        console.print(f"[green]✓[/green] Exported to CSV: {csv_file}")

    if json_file:
        df.to_json(json_file, orient='records', indent=2)
        console.print(f"[green]✓[/green] Exported to JSON: {json_file}")

    if excel_file:
        # sheet names are capped at 31 characters
        with pd.ExcelWriter(excel_file, engine='openpyxl') as writer:
            df.to_excel(writer, sheet_name=sheet[:31], index=False)
        console.print(f"[green]✓[/green] Exported to Excel: {excel_file}")


def build_parser():
    parser = QueryArgumentParser(
        prog='ceph-query-rich',
        description='Ceph Query Tool - Rich + Pandas Frontend',
        epilog=commands_help(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-d', '--debug', action='store_true',
                        help='Print diagnostic lines on stderr')
    parser.add_argument('--version', action='version', version=f'%(prog)s {VERSION}')
    parser.add_argument('--export-csv', metavar='FILE',
                        help='Also write the rows to a CSV file')
    parser.add_argument('--export-json', metavar='FILE',
                        help='Also write the rows to a JSON file')
    parser.add_argument('--export-excel', metavar='FILE',
                        help='Also write the rows to an Excel workbook')
    parser.add_argument('command', nargs='?',
                        help='Command to run (see COMMANDS below)')
    parser.add_argument('args', nargs=argparse.REMAINDER, metavar='arg',
                        help='Command arguments')
    return parser


def main(argv=None):
    parser = build_parser()
    options = parser.parse_args(argv)
    ceph_query_core.DEBUG = options.debug

    console = Console()
    err_console = Console(stderr=True)

    try:
        rows = execute(options.command, options.args)
    except UsageError as e:
        parser.print_usage(sys.stderr)
        err_console.print(f"[red bold]ERROR:[/red bold] {escape(str(e))}")
        return e.exit_code
    except CephQueryError as e:
        err_console.print(f"[red bold]ERROR:[/red bold] {escape(str(e))}")
        return e.exit_code

    df = build_dataframe(rows, options.command)
    display_rich_output(console, df, options.command)
    export_data(console, df,
                csv_file=options.export_csv,
                json_file=options.export_json,
                excel_file=options.export_excel,
                sheet=options.command)
    return 0


if __name__ == "__main__":
    sys.exit(main())
