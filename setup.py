from setuptools import setup, find_packages

setup(
    name='chainctl',
    version='0.1.0',
    packages=find_packages(exclude=['chainctl.tests', 'chainctl.tests.*']),
    include_package_data=True,
    install_requires=[
        'typer',
        'pyyaml',
        'pydantic>=2',
        'jsonschema',
        'python-dotenv',
        'requests',
        'cryptography',
        'toml'
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'chainctl=chainctl.cli:main'
        ]
    },
    description='A CLI for generating, running and upgrading local proof-of-stake test networks',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX',
    ],
    python_requires='>=3.8',
)
