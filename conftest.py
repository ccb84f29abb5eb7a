import json
import os

import pytest


VERSION = '3.2.2-1'

CHANGELOG = """\
wireguard-kit (3.2.1-1) unstable; urgency=medium

  * New upstream release.

 -- Jane Packager <jane@example.com>  Mon, 03 Jan 2022 10:00:00 +0000

wireguard-kit (3.2.0-1) unstable; urgency=medium

  * Initial release.

 -- Jane Packager <jane@example.com>  Sat, 01 Jan 2022 09:00:00 +0000
"""

COPYRIGHT = """\
Format: https://www.debian.org/doc/packaging-manuals/copyright-format/1.0/
Upstream-Name: wireguard-kit

Files: *
Copyright: 2020-2022 Jane Packager
License: GPL-2+
"""

STUB_TEMPLATE = """\
#!/bin/sh
echo "${{0##*/}} $*" >> "$STUB_LOG"
{body}
exit 0
"""


@pytest.fixture
def stub_log(tmp_path, monkeypatch):
    """File the stub commands append their command lines to.
    """
    log = tmp_path / 'stub.log'
    log.write_text('')
    monkeypatch.setenv('STUB_LOG', str(log))
    return log


@pytest.fixture
def stub_dir(tmp_path, stub_log):
    path = tmp_path / 'bin'
    path.mkdir()
    return path


@pytest.fixture
def make_stub(stub_dir):
    """make_stub(name, body='') puts a logging shell script named `name` on the PATH.
    """
    def make(name, body=''):
        stub = stub_dir / name
        stub.write_text(STUB_TEMPLATE.format(body=body))
        stub.chmod(0o755)
        return stub
    return make


@pytest.fixture
def work_tree(tmp_path, monkeypatch):
    """A git working tree at <tmp>/work/repo, set as the cwd.
    """
    repo = tmp_path / 'work' / 'repo'
    (repo / '.git').mkdir(parents=True)
    debian = repo / 'debian'
    debian.mkdir()
    (debian / 'changelog').write_text(CHANGELOG.replace('3.2.1-1', VERSION, 1))
    (debian / 'copyright').write_text(COPYRIGHT)
    (debian / 'rules').write_text('#!/usr/bin/make -f\n%:\n\tdh $@\n')
    source = repo / 'source'
    source.mkdir()
    (source / 'wireguard-kit_3.2.2.orig.tar.gz').write_bytes(b'not really a tarball')
    monkeypatch.chdir(repo)
    return repo


@pytest.fixture
def conf_file(tmp_path, stub_dir):
    """Configuration keeping the run inside tmp_path, with the stubs first on the PATH.
    """
    tmp_root = tmp_path / 'tmp'
    tmp_root.mkdir()
    conf = {
        'tmp_root': str(tmp_root),
        'pid_dir': str(tmp_path / 'run'),
        'path': f'{stub_dir}:/usr/bin:/bin',
        'executables': ['debian/rules'],
    }
    path = tmp_path / 'debtree.json'
    path.write_text(json.dumps(conf))
    return path
