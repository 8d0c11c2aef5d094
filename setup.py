from pathlib import Path

from setuptools import setup, find_packages

_HERE = Path(__file__).resolve().parent

setup(
    name             = 'shomer',
    version          = '1.0.0',
    description      = 'Shomer — guardian safety scanner for a minor\'s messaging history',
    author           = 'Shomer',
    packages         = find_packages(exclude=['tests*']),
    install_requires = (_HERE / 'requirements.txt').read_text().splitlines(),
    extras_require   = {
        'test': ['pytest>=7.0', 'httpx>=0.24'],
    },
    entry_points     = {
        'console_scripts': [
            'shomer     = shomer.cli:main',
            'shomer-api = shomer.api:main',
        ],
    },
    python_requires  = '>=3.10',
    classifiers      = [
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
    ],
)
