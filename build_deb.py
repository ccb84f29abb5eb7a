#!/usr/bin/env python3
"""build the .deb and associated source build files for a package version.

  * Extracts the source tarball into a temporary directory
  * Copies the debian directory in beside it
  * Runs debuild and debsign
  * Strips a directory dpkg cannot remove from the .deb
  * Saves the build output files next to the git working tree

usage: build_deb.py [-d] [-h] [-c <config file>] -v <package version>
"""
import sys,os
import shutil

import debtree
from debtree import traced


class BuildDeb(debtree.Tool):
    """
    Steps for building the package from the root of its git working tree.
    """
    name = 'build_deb'

    def process(self):
        self.initialise()
        self.populate_tmp_dir()
        self.build()

    @traced
    def initialise(self):
        """Check the working tree is ready to build the requested version.
        """
        self.ensure_git_root()

        debtree.require_files((self.changelog, 'f:r'))
        with open(self.changelog, encoding='utf-8') as f:
            content = f.read()
        if f'{self.package} ({self.version.full}) ' not in content:
            raise debtree.PreconditionError(
                f'{self.changelog} is not for the requested package.  Content:\n{content}')

        debtree.require_files((self.source_tarball, 'f:r'))

    @traced
    def populate_tmp_dir(self):
        """Lay out the temporary directory for debuild:

            <package>_<software version>.orig.tar.gz
            <package>_<software version>/
                (extracted source)
                debian/
        """
        tmp_dir = self.lifecycle.make_tmp_dir(self.tmp_root)
        self.ctx.info(f'Populating temporary directory {tmp_dir}')

        self.build_dir = os.path.join(tmp_dir, f'{self.package}_{self.version.software}')
        os.mkdir(self.build_dir)

        dest = os.path.join(tmp_dir, self.tarball_name)
        self.ctx.info(f'Copying {self.source_tarball} to {dest}')
        shutil.copy2(self.source_tarball, dest)

        self.ctx.info(f'Extracting tarball {self.source_tarball} to {self.build_dir}')
        self.capture_checked(
            ['tar', '--extract', '--file', self.source_tarball, '--directory', self.build_dir],
            quiet=True,
        )

        self.ctx.info('Copying the debian directory')
        shutil.copytree(self.debian_dir, os.path.join(self.build_dir, 'debian'), symlinks=True)

    @traced
    def build(self):
        """Run debuild and debsign, patch the .deb and save the output files.
        """
        save_dir = os.path.abspath(self.output_dir)

        self.ctx.info(f'Running debuild in {self.build_dir}')
        self.call_checked(self.build_cmd, cwd=self.build_dir)

        self.ctx.info('Running debsign')
        self.call_checked(self.sign_cmd, cwd=self.build_dir)

        if self.strip_path:
            self.strip_deb()
        self.save_outputs(save_dir)

    def artifact_name(self, suffix):
        return f'{self.package}_{self.version.full}{suffix}'

    @property
    def deb_name(self):
        for suffix in self.artifact_suffixes:
            if suffix.endswith('.deb'):
                return self.artifact_name(suffix)
        raise debtree.ConfigError('artifact_suffixes has no .deb entry')

    @traced
    def strip_deb(self):
        """Delete strip_path from the .deb's data.tar.xz.

        Works around "dpkg: warning: while removing wireguard-kit, directory
        '/usr/lib/systemd/system' not empty so not removed".
        """
        out_dir = os.path.dirname(self.build_dir)
        deb = self.deb_name
        self.ctx.info(f'Removing {self.strip_path} from data.tar.xz')
        self.capture_checked(['ar', 'x', deb, 'data.tar.xz'], cwd=out_dir)
        self.capture_checked(['unxz', 'data.tar.xz'], cwd=out_dir)
        rc, out = self.capture(
            ['tar', '--delete', '--occurrence', '-f', 'data.tar', self.strip_path], cwd=out_dir)
        if rc != 0:
            # nothing to delete; put the member back as it was
            self.ctx.warning(f'{self.strip_path} not removed from {deb}:\n{out}')
        self.capture_checked(['xz', 'data.tar'], cwd=out_dir)
        self.capture_checked(['ar', 'r', deb, 'data.tar.xz'], cwd=out_dir)

    @traced
    def save_outputs(self, save_dir):
        """Copy the build output files to save_dir.
        Failures are reported as an error but do not stop the run.
        """
        out_dir = os.path.dirname(self.build_dir)
        self.ctx.info(f'Saving the build output files to {save_dir}')
        saved = []
        failures = []
        for suffix in self.artifact_suffixes:
            name = self.artifact_name(suffix)
            try:
                saved.append(shutil.copy2(os.path.join(out_dir, name), save_dir))
            except OSError as e:
                failures.append(f'{name}: {e.strerror or e}')
        if failures:
            self.ctx.error(
                f'Unable to save build output file(s) to {save_dir}:'
                + ''.join(debtree.msg_lf + failure for failure in failures))

        listing = '\n'.join(f'{os.path.getsize(path):>10}  {path}' for path in saved)
        self.ctx.info(f'Build output files\n{listing}')


def main(argv=None):
    return debtree.run_tool(BuildDeb, argv)


if __name__=='__main__':

    sys.exit(main())
