"""
Setup script for Aegis - secure chat session core.

This library provides:
- X25519 identities held in memory only, with short fingerprints
- Pairwise ChaCha20-Poly1305 sessions with deterministic nonces
- Periodic rekeying for forward secrecy
- Room messaging over a mesh of pairwise sessions
- Chunked file transfer with whole-file digest verification
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='aegischat',
    version='0.3.0',
    author='aegischat contributors',
    description='Session core for end-to-end encrypted chat: handshake, ratchet, rooms and file transfer',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
    install_requires=[
        'cryptography>=42.0.4',
        'tomli>=2.0.1; python_version<"3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
        ],
    },
)
