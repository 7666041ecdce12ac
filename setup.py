#!/usr/bin/env python3
from setuptools import setup

setup(
    name='settee',
    version='1.0.0',
    license='GNU Affero GPL v3',
    author='Florian Leitner',
    author_email='florian.leitner@gmail.com',
    url='https://github.com/fnl/settee',
    description='a CouchDB client with retries and failover',
    long_description=open('README.rst').read(),
    python_requires='>=3.6',
    install_requires=[],
    extras_require={
        'test': ['pytest >= 3.0'],
    },
    packages=[
        'settee',
    ],
    package_dir={'': 'src'},
    scripts=[
        'scripts/setteereq.py',
    ],
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Console',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: GNU Affero General Public License v3',
        'Operating System :: POSIX',
        'Programming Language :: Python :: 3',
        'Topic :: Database :: Front-Ends',
        'Topic :: Internet :: WWW/HTTP',
        'Topic :: Software Development :: Libraries',
    ],
)
