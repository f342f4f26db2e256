#!/usr/bin/env python
from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='django-ldapmapper',
    version='1.0.0',
    description='A fluent LDAP query builder and active-record models for Django',
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['django', 'ldap', 'query builder'],
    packages=find_packages(exclude=['bin']),
    python_requires='>=3.10',
    include_package_data=True,
    package_data={'ldapmapper': ['tests/*.json']},
    install_requires=[
        'django',
        'ldap_filter',
        'python-ldap',
        'pyasn1',
    ],
    extras_require={
        'test': [
            'pytest',
            'python-ldap-faker',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Framework :: Django",
    ],
)
