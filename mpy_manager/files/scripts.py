"""Scripts executed on the board by the file operations.

Each script is a small function that is defined, called and deleted again so
nothing leaks into the REPL namespace. Everything it prints is framed by the
session's sentinels; any exception is reported on one error sentinel line
instead of a traceback.
"""
from __future__ import annotations

import textwrap
from string import Template

from ..protocol.capture import Sentinels
from ..protocol.control import exec_line, python_literal

_WRAPPER = Template('''\
def _mpym():
    try:
        import json
    except ImportError:
        import ujson as json
    try:
        import os
    except ImportError:
        import uos as os
    try:
$body
    except Exception as e:
        print($error + ' ' + type(e).__name__ + ': ' + str(e))
_mpym()
del _mpym''')

_WRITE = '''\
with open($path, $mode) as f:
    f.write($data)
print($start)
print($end)'''

_VERIFY = '''\
try:
    size = os.stat($path)[6]
    present = True
except OSError:
    size = -1
    present = False
print($start)
print(json.dumps([present, size]))
print($end)'''

_READ = '''\
with open($path) as f:
    data = f.read()
print($start)
print(json.dumps(data))
print($end)'''

# st[0] & 0x4000 is the directory bit of the stat mode
_LIST = '''\
base = $path
entries = []
for name in os.listdir(base):
    st = os.stat(base.rstrip('/') + '/' + name)
    is_dir = (st[0] & 0x4000) != 0
    entries.append([name, is_dir, 0 if is_dir else st[6]])
print($start)
print(json.dumps(entries))
print($end)'''

_DELETE = '''\
os.$operation($path)
print($start)
print($end)'''

_MEMORY = '''\
import gc
gc.collect()
info = {'mem_free': gc.mem_free(), 'mem_alloc': gc.mem_alloc()}
try:
    st = os.statvfs('/')
    info['flash_total'] = st[0] * st[2]
    info['flash_free'] = st[0] * st[3]
except (AttributeError, OSError):
    pass
try:
    import machine
    freq = machine.freq()
    info['cpu_freq'] = freq[0] if isinstance(freq, tuple) else freq
except (ImportError, AttributeError):
    pass
print($start)
print(json.dumps(info))
print($end)'''


def render(body: str, sentinels: Sentinels, **values: str) -> str:
    """Render one framed script as a single ``exec(...)`` REPL line.

    ``values`` are substituted verbatim, so callers pass them already quoted
    with ``python_literal`` unless they are trusted identifiers.
    """
    filled = Template(body).substitute(
        start=python_literal(sentinels.start),
        end=python_literal(sentinels.end),
        **values,
    )
    source = _WRAPPER.substitute(
        body=textwrap.indent(filled, " " * 8),
        error=python_literal(sentinels.error),
    )
    return exec_line(source)


def write_chunk(sentinels: Sentinels, path: str, data: str, append: bool) -> str:
    return render(
        _WRITE, sentinels,
        path=python_literal(path),
        mode=python_literal("a" if append else "w"),
        data=python_literal(data),
    )


def verify(sentinels: Sentinels, path: str) -> str:
    return render(_VERIFY, sentinels, path=python_literal(path))


def read(sentinels: Sentinels, path: str) -> str:
    return render(_READ, sentinels, path=python_literal(path))


def list_dir(sentinels: Sentinels, path: str) -> str:
    return render(_LIST, sentinels, path=python_literal(path))


def delete(sentinels: Sentinels, path: str, is_directory: bool = False) -> str:
    operation = "rmdir" if is_directory else "remove"
    return render(_DELETE, sentinels, operation=operation, path=python_literal(path))


def memory(sentinels: Sentinels) -> str:
    return render(_MEMORY, sentinels)
