import argparse
import os
import sys
from typing import List

from apq import ApqError, Log, load
from export import combine, create_xlsx, load_nodes, to_gpx, to_json, write_node_files
from landmarks import Document, Kind

EPILOG = """examples:
  apq2gpx -j -g some/dir/track.trk      track.json and track.gpx next to the input
  apq2gpx -g -g -o ./ some/dir/track.trk pretty-printed ./track.gpx
  apq2gpx -j -j -o - waypoint.wpt         pretty JSON to standard output
  apq2gpx -b foo.ldk                      extract the files of a container
  apq2gpx -g foo.ldk                      one .gpx per file in a container
  apq2gpx -g -j -o foobar_ -m a.set b.rte c.trk
                                          foobar_merged.json and foobar_merged.gpx

Binary data is base64 encoded in JSON output."""


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='apq2gpx',
        description='Convert AlpineQuest landmark files (.wpt .set .rte .are .trk .ldk) to GPX, JSON or XLSX.',
        epilog=EPILOG, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('-v', dest='verbose', action='count', default=0, help='increase verbosity')
    parser.add_argument('-q', dest='quiet', action='count', default=0, help='decrease verbosity')
    parser.add_argument('-j', dest='json', action='count', default=0,
                        help='generate JSON output (twice for pretty-printing)')
    parser.add_argument('-g', dest='gpx', action='count', default=0,
                        help='generate GPX output (twice for pretty-printing)')
    parser.add_argument('-x', dest='xlsx', action='store_true', help='generate XLSX output')
    parser.add_argument('-b', dest='bin', action='store_true',
                        help='write LDK contents to individual files (.ldk input only)')
    parser.add_argument('-m', dest='merge', action='store_true',
                        help='merge all input files into a single output instead of individual files')
    parser.add_argument('-f', dest='overwrite', action='store_true', help='overwrite existing output files')
    parser.add_argument('-o', dest='outbase', default='',
                        help="output base name (default: input path and base name), '-' for standard output")
    parser.add_argument('files', nargs='+', metavar='FILE', help='landmark files')
    return parser.parse_args(argv)


class Main:
    def __init__(self, args, log=None):
        self.args = args
        self.log = log if log is not None else Log(verbosity=args.verbose - args.quiet)

    def run(self) -> int:
        """Process all files, returns the number of errors."""
        errors = 0
        all_datas = []
        for path in self.args.files:
            self.log.print('Loading: %s', path)
            try:
                data = load(path, self.log)
            except (ApqError, OSError) as e:
                self.log.error('%s: %s', path, e)
                errors += 1
                continue

            datas = [data]
            if data.kind == Kind.LDK:
                if self.args.bin and not self._write_bin(data):
                    errors += 1
                if self.args.json or self.args.gpx or self.args.xlsx or self.args.merge:
                    ldk_datas, ldk_errors = load_nodes(data, self.log)
                    errors += ldk_errors
                    datas.extend(ldk_datas)
            elif self.args.bin:
                self.log.warning('Cannot write %s type files.', data.kind.value.upper())

            if self.args.merge:
                all_datas.extend(datas)
            else:
                errors += self._proc_datas(datas)

        if self.args.merge and all_datas:
            errors += self._proc_datas([combine(all_datas)])
        return errors

    def _out_base(self, data: Document) -> str:
        base = os.path.splitext(data.path)[0]
        if self.args.outbase:
            base = self.args.outbase + os.path.basename(base)
        return base

    def _write_bin(self, data: Document) -> bool:
        if self.args.outbase == '-':
            self.log.warning('Cannot write %s type contents to standard output.', data.kind.value.upper())
            return False
        if self.args.outbase:
            base = self.args.outbase
        else:
            base = os.path.dirname(data.path)
            base = base + os.sep if base else ''
        return write_node_files(data.root, base, overwrite=self.args.overwrite, log=self.log)

    def _proc_datas(self, datas: List[Document]) -> int:
        errors = 0
        to_stdout = self.args.outbase == '-'
        for data in datas:
            base = self._out_base(data)
            renderable = data.kind not in (Kind.LDK, Kind.BIN)
            if self.args.json:
                if not self._write_file('-' if to_stdout else base + '.json', to_json(data, self.args.json > 1)):
                    errors += 1
            if self.args.gpx and renderable:
                if not self._write_file('-' if to_stdout else base + '.gpx', to_gpx(data, self.args.gpx > 1)):
                    errors += 1
            if self.args.xlsx and renderable:
                if not self._write_xlsx(base + '.xlsx', data):
                    errors += 1
        return errors

    def _check_overwrite(self, path) -> bool:
        if os.path.exists(path) and not self.args.overwrite:
            self.log.warning('File already exists: %s', path)
            return False
        return True

    def _write_xlsx(self, path, data: Document) -> bool:
        if self.args.outbase == '-':
            self.log.warning('Cannot write XLSX to standard output.')
            return False
        if not self._check_overwrite(path):
            return False
        self.log.print('Writing: %s', path)
        return create_xlsx([data], path, log=self.log)

    def _write_file(self, path, text: str) -> bool:
        if path == '-':
            sys.stdout.write(text + '\n')
            return True
        if not self._check_overwrite(path):
            return False
        self.log.print('Writing: %s', path)
        try:
            with open(path, 'w', encoding='utf-8') as f_out:
                f_out.write(text)
        except OSError as e:
            self.log.warning('Failed writing %s: %s', path, e)
            return False
        return True


def main(argv=None) -> int:
    args = parse_args(argv)
    errors = Main(args).run()
    if errors:
        print("Try 'apq2gpx -h'.", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
