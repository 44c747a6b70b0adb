from setuptools import setup, find_packages

setup(
    name='opencode-orchestrator',
    version='0.1.0',
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    include_package_data=True,
    description='Route coding-agent queries to the OpenCode CLI or HTTP chat endpoints with ordered fallback.',
    author='jmikedupont2',
    author_email='jmikedupont2@example.com',
    url='https://github.com/jmikedupont2/opencode-orchestrator',
    install_requires=[
        'anyio>=4.0',
        'httpx>=0.24',
        'fastapi>=0.110',
        'python-dotenv',
        'requests',
        'uvicorn[standard]>=0.22',
        'opentelemetry-api>=1.20',
        'opentelemetry-sdk>=1.20',
        'opentelemetry-exporter-otlp-proto-http>=1.20',
    ],
    extras_require={
        'test': [
            'pytest>=7.4',
            'pytest-mock>=3.11',
        ],
    },
    entry_points={
        'console_scripts': ['opencode-orchestrator=opencode_orchestrator.cli:main'],
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.10',
    zip_safe=False,
)
