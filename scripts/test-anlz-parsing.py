#!/usr/bin/env python3
#
# Decode every analysis file under a directory and show what
#  was found: the embedded track path, which section layout
#  won, and the waveform length.

import argparse
import os

import rich.console
import rich.table

from crateflow import anlz
from crateflow.correlator import find_analysis_files
from crateflow.errors import AnalysisFormatError


def main(root, limit):
    table = rich.table.Table()
    table.add_column('File')
    table.add_column('Track Path')
    table.add_column('Layout')
    table.add_column('Samples', justify='right')
    table.add_column('Seconds', justify='right')

    failed = 0
    for ext_path in find_analysis_files(root, ['.EXT'])[:limit]:
        with open(ext_path, 'rb') as f:
            data = f.read()

        try:
            info = anlz.parse_analysis_file(data)
        except AnalysisFormatError as e:
            failed += 1
            table.add_row(os.path.relpath(ext_path, root), f'[red]{e}[/red]', '', '', '')
            continue

        section = anlz.find_waveform_section(data)
        table.add_row(
            os.path.relpath(ext_path, root),
            info.path or '',
            section.mode if section else '-',
            str(section.payload_length // 2) if section else '0',
            f'{info.duration_seconds:.1f}' if info.duration_seconds is not None else '',
        )

    console = rich.console.Console()
    console.print(table)
    if failed:
        console.print(f'{failed} files could not be parsed')

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Analysis file decoder")
    parser.add_argument("root", help="Directory holding the analysis files")
    parser.add_argument(
        "-l",
        "--limit",
        type=int,
        default=50,
        help="Maximum number of files to decode"
    )
    args = parser.parse_args()

    main(args.root, args.limit)
