from setuptools import setup

setup(
    name = "debtree",
    py_modules = ["debtree", "build_deb", "update_build_tree"],
    scripts = ["build_deb.py", "update_build_tree.py"],
    version = "0.1.0",
    license = "GPLv2+",
    platforms = ['POSIX'],      # debian only..
    install_requires=[],
    extras_require={"test": ["pytest"]},
    description = "Build and release a debian package from its git working tree.",
    author = "Charles Michael Atkinson",
    keywords = ["debian", "package", "debuild"],
    long_description = """
debtree
=======

Two scripts for the release workflow of a debian package kept in git.

## Getting the tree ready for a version

```
update_build_tree.py -v 3.2.2-1
```

* Set 644 permissions on the tree, 755 on the executables.
* Put the version and today's date in debian/changelog, this year in debian/copyright.
* Remove source tarballs of other versions from the tree and git.
* Commit the changes and tag the commit 3.2.2-1.


## Building the package

```
build_deb.py -v 3.2.2-1
```

It does the equivalent of:

* tar -xf source/wireguard-kit_3.2.2.orig.tar.gz -C $TMP/wireguard-kit_3.2.2
* cp -pr debian $TMP/wireguard-kit_3.2.2/debian
* cd $TMP/wireguard-kit_3.2.2; debuild; debsign
* take ./usr/lib/systemd/system/ out of the .deb's data.tar.xz
* cp -p $TMP/wireguard-kit_3.2.2-1* ..

Both exit 0 when all went well, 1 after warnings, 2 after errors, 3 after
both and 128+N when killed by signal N.  -d keeps the temporary directory
and traces what is going on.

Settings (package name, paths, commands) can be overridden in ./debtree.json
or the file given with -c.
"""
)
