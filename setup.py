from setuptools import setup, find_packages

setup(
    name='flexnode',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    install_requires=[
        'typer',
        'kubernetes',
        'python-dotenv',
        'requests',
        'PyYAML',
        'pydantic>=2',
        'jsonschema',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'flexnode=flexnode.cli:app'
        ]
    },
    description='Agent that joins a Linux VM to an AKS cluster through Azure Arc and keeps it healthy',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.8',
)
