import os
import re
import codecs
from setuptools import setup, find_packages

HERE = os.path.abspath(os.path.dirname(__file__))


def read(*parts):
    with codecs.open(os.path.join(HERE, *parts), 'rb', 'utf-8') as f:
        return f.read()


def get_version():
    return re.search(
        r"^__version__ = '([^']+)'$",
        read('src', 'txcertrenew', '__init__.py'),
        re.MULTILINE).group(1)


setup(
    version=get_version(),
    name='txcertrenew',
    description='ACME DNS-01 certificate renewal for Twisted',
    license='Expat',
    long_description=read('README.rst'),
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    zip_safe=True,
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'Natural Language :: English',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: Implementation :: CPython',
        'Programming Language :: Python :: Implementation :: PyPy',
        'Topic :: Internet :: Name Service (DNS)',
        'Topic :: Security :: Cryptography',
        ],
    install_requires=[
        'acme>=1.0.0',
        'attrs>=22.2.0',
        'constantly>=15.1.0',
        'cryptography>=42.0.0',
        'eliot>=1.6.0',
        'josepy>=1.13.0',
        'pem>=16.1.0',
        'treq>=15.1.0',
        'twisted[tls]>=22.8.0',
        'zope.interface',
        ],
    extras_require={
        'libcloud': [
            'apache-libcloud',
        ],
        'test': [
            'apache-libcloud',
            'hypothesis>=3.20.0',
            'testtools>=2.1.0',
            ],
        },
    entry_points={
        'console_scripts': [
            'txcertrenew = txcertrenew.cli:main',
            ],
        },
    )
