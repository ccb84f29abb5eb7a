#!/usr/bin/env python3
"""ready the git working tree for a new package version.

  * Sets file permissions
  * Updates debian/changelog and debian/copyright for the version, example 3.2.2-1
  * Removes source tarballs for other versions from the tree and git
  * Commits any changes and tags the commit with the package version

usage: update_build_tree.py [-d] [-h] [-c <config file>] -v <package version>
"""
import sys,os
from datetime import datetime
import glob
import re

import debtree
from debtree import traced


# as in "Fri, 13 Jul 2012 15:05:04 +0300"
changelog_date_format = '%a, %d %b %Y %H:%M:%S %z'
changelog_date_re = re.compile(r'[A-Za-z]{3}, [0-9]+ [A-Za-z]{3} [0-9]{4} [0-9:]+ [-+][0-9]{4}')

copyright_year_re = re.compile(r'^(Copyright: [0-9]{4}-)[0-9]{4}', re.M)

# git status --porcelain XY codes for unmerged paths
unmerged_states = frozenset(['DD', 'AU', 'UD', 'UA', 'DU', 'AA', 'UU'])


class TreeUpdater(debtree.Tool):
    """
    Steps for moving the working tree to a new package version.
    """
    name = 'update_build_tree'

    def process(self):
        self.ensure_git_root()
        self.set_perms()
        self.update()
        if self.commit():
            self.tag()

    @traced
    def set_perms(self):
        """644 for every file outside .git, 755 for the executables.
        """
        self.ctx.info('Setting 644 permissions on all files except under .git')
        for dirpath, dirnames, filenames in os.walk('.'):
            if dirpath == '.' and '.git' in dirnames:
                dirnames.remove('.git')
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                if os.path.isfile(path) and not os.path.islink(path):
                    os.chmod(path, 0o644)

        listing = ''.join('\n' + path for path in self.executables)
        self.ctx.info(f'Setting 755 permissions on {listing}')
        for path in self.executables:
            os.chmod(path, 0o755)

    @traced
    def update(self, now=None):
        """Bring changelog, copyright and source tarballs in line with the version.
        debian/compat, control, rules etc. cannot be updated automatically.
        """
        if now is None:
            now = datetime.now().astimezone()
        debtree.require_files((self.changelog, 'f:rw'), (self.copyright, 'f:rw'))

        self.ctx.info(f'Ensuring package version {self.version} and current date in {self.changelog}')
        # the topmost entry only
        header_re = re.compile(rf'^{re.escape(self.package)} \([^)]+\)', re.M)
        rewrite(
            self.changelog,
            lambda text: changelog_date_re.sub(
                now.strftime(changelog_date_format),
                header_re.sub(f'{self.package} ({self.version})', text, count=1),
                count=1,
            ),
        )

        self.ctx.info(f'Ensuring current year in {self.copyright}')
        rewrite(
            self.copyright,
            lambda text: copyright_year_re.sub(rf'\g<1>{now.year}', text),
        )

        pattern = os.path.join(self.source_dir, f'{self.package}_*.orig.tar.gz')
        for path in sorted(glob.glob(pattern)):
            if os.path.basename(path) == self.tarball_name:
                continue
            self.ctx.info(f'Removing {path} from tree and git')
            self.capture_checked(['git', 'rm', '--quiet', path])
            if os.path.exists(path):
                os.remove(path)

    @traced
    def commit(self):
        """Commit any changes made by update.  Returns whether a commit was made.
        """
        status = self.capture_checked(['git', 'status', '--untracked-files=no', '--porcelain'])
        lines = [line for line in status.splitlines() if line.strip()]

        if any(line[:2] in unmerged_states for line in lines):
            raise debtree.PreconditionError(f'Merge conflicts\n{status}')

        if not lines:
            self.ctx.info('No changes to commit')
            return False

        self.ctx.info('Committing changes\n' + '\n'.join(lines))
        self.capture_checked(['git', 'commit', '--all', '--message', self.version.full])
        return True

    @traced
    def tag(self):
        """Create an annotated tag named after the package version.
        """
        self.ctx.info(f'Creating annotated git tag {self.version}')
        # --force replaces any existing tag with the same name
        self.capture_checked(
            ['git', 'tag', '--annotate', '--force', '--message', self.version.full, self.version.full])


def rewrite(path, edit):
    """Apply edit() to the text of the file, writing it back only if changed.
    """
    with open(path, encoding='utf-8') as f:
        text = f.read()
    new_text = edit(text)
    if new_text != text:
        with open(path, 'w', encoding='utf-8') as f:
            f.write(new_text)


def main(argv=None):
    return debtree.run_tool(TreeUpdater, argv)


if __name__=='__main__':

    sys.exit(main())
