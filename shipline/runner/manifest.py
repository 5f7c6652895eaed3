import logging
import re
from pathlib import Path
from typing import Iterator

from shipline.exceptions import ManifestError

logger = logging.getLogger(__name__)

IMAGE_RE = re.compile(
    r'^(?P<prefix>\s*(?:-\s+)?image:\s*)(?P<q>[\'"]?)(?P<ref>[^\'"\s#]+)(?P=q)(?P<rest>.*)$'
)
NAME_RE = re.compile(
    r'^\s*(?:-\s+)?name:\s*(?P<q>[\'"]?)(?P<name>[^\'"\s#]+)(?P=q)\s*(?:#.*)?$'
)


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip(' '))


def _key_column(line: str) -> int:
    stripped = line.lstrip(' ')
    col = len(line) - len(stripped)
    if stripped.startswith('- '):
        rest = stripped[1:]
        col += 1 + len(rest) - len(rest.lstrip(' '))
    return col


def _is_item(line: str) -> bool:
    return line.lstrip(' ').startswith('- ')


def _is_content(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and not stripped.startswith('#')


def _list_items(lines: list[str]) -> Iterator[tuple[int, int]]:
    for start, line in enumerate(lines):
        if not _is_item(line):
            continue
        indent = _indent(line)
        end = start + 1
        while end < len(lines):
            if _is_content(lines[end]) and _indent(lines[end]) <= indent:
                break
            end += 1
        yield start, end


def _container_image_lines(lines: list[str], container: str) -> list[int]:
    res = []
    for start, end in _list_items(lines):
        col = _key_column(lines[start])
        name = image_idx = None
        for i in range(start, end):
            line = lines[i].rstrip('\r\n')
            if i != start and (_is_item(line) or _indent(line) != col):
                continue
            if m := NAME_RE.match(line):
                name = m['name']
            elif IMAGE_RE.match(line):
                image_idx = i
        if name == container and image_idx is not None:
            res.append(image_idx)
    return res


def replace_image(text: str, new_ref: str, container: str | None = None) -> tuple[str, int]:
    lines = text.splitlines(keepends=True)
    if container is None:
        targets = [
            i for i, line in enumerate(lines) if IMAGE_RE.match(line.rstrip('\r\n'))
        ]
    else:
        targets = _container_image_lines(lines, container)

    for i in targets:
        body = lines[i].rstrip('\r\n')
        newline = lines[i][len(body):]
        m = IMAGE_RE.match(body)
        lines[i] = f'{m["prefix"]}{m["q"]}{new_ref}{m["q"]}{m["rest"]}{newline}'
    return ''.join(lines), len(targets)


def edit_manifest(path: Path, new_ref: str, container: str | None = None) -> int:
    if not path.is_file():
        raise ManifestError(f'Manifest {path} not found')
    text, count = replace_image(path.read_text(), new_ref, container)
    if not count:
        target = f'container {container!r}' if container else 'any container'
        raise ManifestError(f'No image reference for {target} in {path}')
    path.write_text(text)
    logger.info(f'Set image {new_ref} in {path} ({count} reference(s))')
    return count
