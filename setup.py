#!/usr/bin/env python3
"""
Setup script for tarpipe

Installation:
    pip install .
    pip install -e .  # Development mode

Distribution:
    python setup.py sdist bdist_wheel
    twine upload dist/*
"""

from setuptools import setup
import re

# Read version from tarpipe.py
with open('tarpipe.py', 'r', encoding='utf-8') as f:
    content = f.read()
    version_match = re.search(r'^__version__\s*=\s*[\'"]([^\'"]*)[\'"]', content, re.MULTILINE)
    if version_match:
        version = version_match.group(1)
    else:
        raise RuntimeError("Unable to find version string in tarpipe.py")

# Read long description from README
with open('README.md', 'r', encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='tarpipe',
    version=version,
    description='Stream a tarball of local paths over a single TCP connection or into a file, '
                'and unpack it on the other side. Pure Python, blocking I/O, one transfer per run.',
    long_description=long_description,
    long_description_content_type='text/markdown',
    py_modules=['tarpipe'],
    # Extraction relies on tarfile extraction filters (3.10.12+, 3.11.4+, 3.12+).
    python_requires='>=3.10.12,!=3.11.0,!=3.11.1,!=3.11.2,!=3.11.3',
    install_requires=[
        'xxhash>=3.0.0',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0.0',
            'pytest-cov>=4.0.0',
            'mypy>=1.0.0',
            'black>=23.0.0',
            'flake8>=6.0.0',
            'isort>=5.12.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'tarpipe=tarpipe:main',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)',
        'Operating System :: POSIX',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: System :: Archiving',
        'Topic :: System :: Networking',
        'Topic :: Utilities',
    ],
    keywords='tar archive stream file-transfer tcp',
    license='GPL-3.0-or-later',
    platforms=['any'],
    zip_safe=False,
)
