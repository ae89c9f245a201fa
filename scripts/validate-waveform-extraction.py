#!/usr/bin/env python3
#
# Report how much beat grid and cue point data a library export
#  carries. Without analysis files these are all the rhythm and
#  waveform scores have to go on.

import argparse

import rich.console
import rich.table

from crateflow import parse_library_file


def percent(part, total):
    if not total:
        return '0.00'
    return f'{part * 100 / total:.2f}'

def main(xml_path, top):
    library = parse_library_file(xml_path)
    tracks = library.tracks

    with_tempo = [x for x in tracks if x.tempo_points]
    with_marks = [x for x in tracks if x.position_marks]
    with_colors = [x for x in tracks if any(m.color.is_set() for m in x.position_marks)]
    with_loops = [x for x in tracks if any(m.inferred_kind == 'loop' for m in x.position_marks)]

    table = rich.table.Table(title=f'{len(tracks)} tracks')
    table.add_column('Data')
    table.add_column('Tracks', justify='right')
    table.add_column('%', justify='right')
    table.add_column('Entries', justify='right')

    table.add_row('Tempo points', str(len(with_tempo)), percent(len(with_tempo), len(tracks)),
                  str(sum(len(x.tempo_points) for x in tracks)))
    table.add_row('Position marks', str(len(with_marks)), percent(len(with_marks), len(tracks)),
                  str(sum(len(x.position_marks) for x in tracks)))
    table.add_row('Colored marks', str(len(with_colors)), percent(len(with_colors), len(tracks)),
                  str(sum(x.position_summary.colored_count for x in with_marks)))
    table.add_row('Loops', str(len(with_loops)), percent(len(with_loops), len(tracks)),
                  str(sum(x.position_summary.loop_count for x in with_marks)))

    # other nested tags we don't parse yet
    tags = {}
    for track in tracks:
        if track.nested_tags:
            for tag, count in track.nested_tags['tags'].items():
                tags[tag] = tags.get(tag, 0) + count

    other = rich.table.Table(title='Other nested tags')
    other.add_column('Tag')
    other.add_column('Count', justify='right')
    for tag, count in sorted(tags.items(), key=lambda x: -x[1])[:top]:
        other.add_row(tag, str(count))

    console = rich.console.Console()
    console.print(table)
    console.print(other)

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Library waveform data report")
    parser.add_argument("xml", help="Path to the library XML export")
    parser.add_argument(
        "-t",
        "--top",
        type=int,
        default=15,
        help="Number of nested tags to list"
    )
    args = parser.parse_args()

    main(args.xml, args.top)
