#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
from setuptools import setup

scriptPath = os.path.abspath( os.path.dirname( __file__ ) )
with open( os.path.join( scriptPath, 'README.md' ), encoding = 'utf-8' ) as file:
    readmeContents = file.read()

setup(
    name             = 'backupmount',
    version          = '0.3.0',

    description      = 'Read-only FUSE mount for the snapshots of a deduplicating backup repository',
    license          = 'MIT',
    classifiers      = [ 'License :: OSI Approved :: MIT License',
                         'Development Status :: 4 - Beta',
                         'Natural Language :: English',
                         'Operating System :: MacOS',
                         'Operating System :: POSIX :: Linux',
                         'Programming Language :: Python :: 3',
                         'Programming Language :: Python :: 3.9',
                         'Programming Language :: Python :: 3.10',
                         'Programming Language :: Python :: 3.11',
                         'Programming Language :: Python :: 3.12',
                         'Topic :: System :: Archiving :: Backup',
                         'Topic :: System :: Filesystems' ],

    long_description = readmeContents,
    long_description_content_type = 'text/markdown',

    python_requires  = '>=3.9',
    # The core library lives in its own folder so that it can be used without the FUSE frontend.
    packages         = [ 'backupmount',
                         'backupmountcore',
                         'backupmountcore.mountsource',
                         'backupmountcore.mountsource.compositing',
                         'backupmountcore.mountsource.formats' ],
    package_dir      = { 'backupmountcore': 'core/backupmountcore' },
    install_requires = [
        'mfusepy',
        'rich',
    ],
    extras_require   = {
        'full' : [ 'argcomplete' ],
        'test' : [ 'pytest' ],
    },
    entry_points = { 'console_scripts': [ 'backupmount=backupmount.cli:cli' ] }
)
