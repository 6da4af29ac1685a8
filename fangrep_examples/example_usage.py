"""Example: using fangrep's windowing and scanning from code.

Run with: python fangrep_examples/example_usage.py
"""
import io
import sys

from fangrep import Highlighter, SearchSpec, compile_matcher, render_result, scan

def main():
    spec = SearchSpec(matcher=compile_matcher("todo", None))
    source = io.BytesIO(b"import os\n    # TODO: handle   errors\nprint('done')\n")
    result = scan("example.py", source, spec)
    sys.stdout.write(render_result(result, Highlighter(enabled=False)).decode())

if __name__ == '__main__':
    main()
