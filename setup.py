#!/usr/bin/env python

# SPDX-License-Identifier: MPL-2.0
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0.  If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
#
# Copyright 2024, 2025 MonetDB Foundation;
# Copyright August 2008 - 2023 MonetDB B.V.;
# Copyright 1997 - July 2008 CWI.

from setuptools import setup

setup(name='monetdb-mapi',
      version='1.0.0',
      description='MonetDB MAPI protocol client core',
      long_description='''\
MonetDB is a database management system that is developed from a
main-memory perspective with use of a fully decomposed storage model,
automatic index management, extensibility of data types and search
accelerators and SQL frontend.

This package contains the MAPI wire protocol client: connection URL
resolution, TLS, the login handshake, the request/reply exchange and
the file transfers used by COPY INTO ... ON CLIENT.
''',
      author='MonetDB Foundation',
      author_email='info@monetdb.org',
      url='https://www.monetdb.org/',
      license='MPL-2.0',
      packages=['monetdb_mapi', 'monetdb_mapi.filetransfer'],
      python_requires='>=3.8',
      extras_require={
          'test': ['cryptography'],
      },
     )
