from __future__ import annotations

import errno
import locale
import os
import threading

import pytest

from vnas.services import file_ops
from vnas.services.errors import (
    AlreadyExists,
    Conflict,
    CrossDeviceError,
    InvalidName,
    NotADirectory,
    NotFound,
    StorageIOError,
    TargetNotDirectory,
    TraversalError,
)
from vnas.services.file_ops import FileOps, format_size


def _ops(tmp_path) -> FileOps:
    return FileOps(str(tmp_path))


def test_format_size():
    assert format_size(0) == '0.0 B'
    assert format_size(1023) == '1023.0 B'
    assert format_size(1536) == '1.5 KB'
    assert format_size(5 * 1024 * 1024) == '5.0 MB'
    assert format_size(3 * 1024 ** 5) == '3072.0 TB'


def test_list_dir_orders_directories_first(tmp_path):
    (tmp_path / 'beta.txt').write_bytes(b'x' * 1536)
    (tmp_path / 'alpha.txt').write_bytes(b'')
    (tmp_path / 'zeta').mkdir()
    (tmp_path / 'gamma').mkdir()

    items = _ops(tmp_path).list_dir('')

    assert [i.name for i in items] == ['gamma', 'zeta', 'alpha.txt', 'beta.txt']
    assert [i.type for i in items] == ['directory', 'directory', 'file', 'file']
    assert items[0].size is None
    assert items[2].size == '0.0 B'
    assert items[3].size == '1.5 KB'
    assert items[3].path == 'beta.txt'
    assert items[3].modified


def test_list_dir_orders_names_ignoring_case(tmp_path):
    for name in ('banana', 'Apple', 'cherry', 'Zebra'):
        (tmp_path / name).write_text(name)

    items = _ops(tmp_path).list_dir('')

    assert [i.name for i in items] == ['Apple', 'banana', 'cherry', 'Zebra']


@pytest.fixture
def restore_locale():
    saved = {category: locale.setlocale(category) for category in (locale.LC_COLLATE, locale.LC_TIME)}
    yield
    for category, value in saved.items():
        locale.setlocale(category, value)


def test_use_host_locale_falls_back_to_c_for_unknown_locale(monkeypatch, restore_locale):
    monkeypatch.setenv('LC_ALL', 'xx_XX.NOT-A-CHARSET')

    file_ops.use_host_locale()

    assert locale.setlocale(locale.LC_COLLATE) == 'C'
    assert locale.setlocale(locale.LC_TIME) == 'C'


def test_list_dir_replaces_undecodable_names(tmp_path):
    raw = os.path.join(os.fsencode(tmp_path), b'bad\xff.txt')
    try:
        with open(raw, 'wb') as handle:
            handle.write(b'x')
    except OSError:
        pytest.skip('filesystem rejects non-UTF-8 names')
    (tmp_path / 'ok.txt').write_text('ok')

    items = _ops(tmp_path).list_dir('')

    assert [i.name for i in items] == ['bad�.txt', 'ok.txt']
    assert items[0].path == 'bad�.txt'
    for item in items:
        item.name.encode('utf-8')


def test_list_dir_reports_relative_paths(tmp_path):
    (tmp_path / 'docs' / 'old').mkdir(parents=True)

    items = _ops(tmp_path).list_dir('docs')

    assert [i.path for i in items] == ['docs/old']
    assert all(str(tmp_path) not in i.path for i in items)


def test_list_dir_is_repeatable(tmp_path):
    (tmp_path / 'a.txt').write_text('a')
    (tmp_path / 'b').mkdir()
    ops = _ops(tmp_path)

    assert ops.list_dir('') == ops.list_dir('')


def test_list_dir_missing_and_file(tmp_path):
    (tmp_path / 'file.txt').write_text('x')
    ops = _ops(tmp_path)

    with pytest.raises(NotFound):
        ops.list_dir('nope')
    with pytest.raises(NotADirectory):
        ops.list_dir('file.txt')
    with pytest.raises(TraversalError):
        ops.list_dir('../..')


def test_stat_describes_entry(tmp_path):
    (tmp_path / 'docs').mkdir()
    (tmp_path / 'docs' / 'notes.md').write_text('hello')
    ops = _ops(tmp_path)

    info = ops.stat('docs/notes.md')

    assert info.name == 'notes.md'
    assert info.type == 'file'
    assert info.size == '5.0 B'
    assert info.path == 'docs/notes.md'
    assert ops.stat('docs').type == 'directory'
    with pytest.raises(NotFound):
        ops.stat('docs/missing.md')


def test_mkdir_then_delete_round_trip(tmp_path):
    (tmp_path / 'parent').mkdir()
    ops = _ops(tmp_path)

    created = ops.mkdir('parent', 'X')

    assert created.type == 'directory'
    assert created.path == 'parent/X'
    assert [(i.name, i.type) for i in ops.list_dir('parent')] == [('X', 'directory')]

    ops.delete('parent/X')

    assert ops.list_dir('parent') == []


def test_mkdir_creates_missing_parent(tmp_path):
    _ops(tmp_path).mkdir('a/b', 'c')

    assert (tmp_path / 'a' / 'b' / 'c').is_dir()


def test_mkdir_rejects_traversal_name(tmp_path):
    ops = _ops(tmp_path)

    with pytest.raises(InvalidName):
        ops.mkdir('', '../../etc')
    assert list(tmp_path.iterdir()) == []


def test_mkdir_rejects_existing(tmp_path):
    (tmp_path / 'taken.txt').write_text('x')

    with pytest.raises(AlreadyExists):
        _ops(tmp_path).mkdir('', 'taken.txt')


def test_delete_removes_tree(tmp_path):
    (tmp_path / 'tree' / 'sub').mkdir(parents=True)
    (tmp_path / 'tree' / 'sub' / 'f.txt').write_text('x')
    (tmp_path / 'keep.txt').write_text('x')
    ops = _ops(tmp_path)

    ops.delete('tree')
    ops.delete('keep.txt')

    assert list(tmp_path.iterdir()) == []


def test_delete_missing_and_root(tmp_path):
    ops = _ops(tmp_path)

    with pytest.raises(NotFound):
        ops.delete('ghost.txt')
    with pytest.raises(TraversalError):
        ops.delete('')
    assert tmp_path.is_dir()


def test_concurrent_delete_only_one_succeeds(tmp_path):
    (tmp_path / 'victim').mkdir()
    for i in range(50):
        (tmp_path / 'victim' / f'{i}.txt').write_text('x')
    ops = _ops(tmp_path)
    barrier = threading.Barrier(2)
    outcomes: list[str] = []

    def _delete():
        barrier.wait()
        try:
            ops.delete('victim')
            outcomes.append('ok')
        except NotFound:
            outcomes.append('not-found')

    threads = [threading.Thread(target=_delete) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ['not-found', 'ok']
    assert not (tmp_path / 'victim').exists()


def test_rename_to_sibling(tmp_path):
    (tmp_path / 'docs').mkdir()
    (tmp_path / 'docs' / 'report.txt').write_text('draft')
    ops = _ops(tmp_path)

    info = ops.rename('docs/report.txt', 'final.txt')

    assert info.path == 'docs/final.txt'
    assert (tmp_path / 'docs' / 'final.txt').read_text() == 'draft'
    assert not (tmp_path / 'docs' / 'report.txt').exists()


def test_rename_rejects_occupied_name(tmp_path):
    (tmp_path / 'a.txt').write_text('a')
    (tmp_path / 'b.txt').write_text('b')

    with pytest.raises(AlreadyExists):
        _ops(tmp_path).rename('a.txt', 'b.txt')

    assert (tmp_path / 'a.txt').read_text() == 'a'
    assert (tmp_path / 'b.txt').read_text() == 'b'


def test_rename_errors(tmp_path):
    (tmp_path / 'a.txt').write_text('a')
    ops = _ops(tmp_path)

    with pytest.raises(NotFound):
        ops.rename('missing.txt', 'x.txt')
    with pytest.raises(InvalidName):
        ops.rename('a.txt', '../escape.txt')
    with pytest.raises(TraversalError):
        ops.rename('', 'newroot')


def test_move_into_directory(tmp_path):
    (tmp_path / 'inbox').mkdir()
    (tmp_path / 'archive').mkdir()
    (tmp_path / 'inbox' / 'mail.eml').write_text('hi')
    ops = _ops(tmp_path)

    info = ops.move('inbox/mail.eml', 'archive')

    assert info.path == 'archive/mail.eml'
    assert (tmp_path / 'archive' / 'mail.eml').read_text() == 'hi'
    assert not (tmp_path / 'inbox' / 'mail.eml').exists()


def test_move_to_root(tmp_path):
    (tmp_path / 'inbox').mkdir()
    (tmp_path / 'inbox' / 'mail.eml').write_text('hi')

    _ops(tmp_path).move('inbox/mail.eml', '')

    assert (tmp_path / 'mail.eml').exists()


def test_move_conflict_leaves_both_untouched(tmp_path):
    (tmp_path / 'a').mkdir()
    (tmp_path / 'b').mkdir()
    (tmp_path / 'a' / 'same.txt').write_text('source')
    (tmp_path / 'b' / 'same.txt').write_text('destination')

    with pytest.raises(Conflict):
        _ops(tmp_path).move('a/same.txt', 'b')

    assert (tmp_path / 'a' / 'same.txt').read_text() == 'source'
    assert (tmp_path / 'b' / 'same.txt').read_text() == 'destination'


def test_move_validation(tmp_path):
    (tmp_path / 'folder' / 'child').mkdir(parents=True)
    (tmp_path / 'file.txt').write_text('x')
    ops = _ops(tmp_path)

    with pytest.raises(NotFound):
        ops.move('ghost.txt', 'folder')
    with pytest.raises(TargetNotDirectory):
        ops.move('folder', 'file.txt')
    with pytest.raises(TargetNotDirectory):
        ops.move('file.txt', 'nowhere')
    with pytest.raises(Conflict):
        ops.move('folder', 'folder/child')
    with pytest.raises(TraversalError):
        ops.move('file.txt', '../outside')


def test_move_cross_device_is_reported(monkeypatch, tmp_path):
    (tmp_path / 'dst').mkdir()
    (tmp_path / 'f.txt').write_text('x')

    def _exdev(src, dst):
        raise OSError(errno.EXDEV, 'Invalid cross-device link')

    monkeypatch.setattr(file_ops.os, 'rename', _exdev)

    with pytest.raises(CrossDeviceError) as exc:
        _ops(tmp_path).move('f.txt', 'dst')

    assert str(tmp_path) not in str(exc.value)
    assert (tmp_path / 'f.txt').exists()


def test_unexpected_os_error_maps_to_storage_io_error(monkeypatch, tmp_path):
    (tmp_path / 'f.txt').write_text('x')

    def _eio(self, missing_ok=False):
        raise OSError(errno.EIO, 'Input/output error')

    monkeypatch.setattr(file_ops.Path, 'unlink', _eio)

    with pytest.raises(StorageIOError) as exc:
        _ops(tmp_path).delete('f.txt')

    assert exc.value.status_code == 500
    assert 'f.txt' in str(exc.value)
    assert str(tmp_path) not in str(exc.value)


@pytest.mark.skipif(not hasattr(os, 'symlink'), reason='symlinks unavailable')
def test_list_dir_skips_dangling_symlink(tmp_path):
    (tmp_path / 'real.txt').write_text('x')
    os.symlink(tmp_path / 'gone.txt', tmp_path / 'dangling.txt')

    names = [i.name for i in _ops(tmp_path).list_dir('')]

    assert names == ['real.txt']
