from setuptools import setup, find_packages

setup(
    name='k3sctl',
    version='0.1.0',
    packages=find_packages(exclude=['*.tests', '*.tests.*']),
    include_package_data=True,
    package_data={
        'k3sctl.modules.k3s': ['templates/*.j2'],
    },
    install_requires=[
        'typer',
        'kubernetes',
        'python-dotenv',
        'requests',
        'pyyaml',
        'jinja2',
        'pydantic>=2',
        'tenacity',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'k3sctl=k3sctl.cli:main'
        ]
    },
    author='Your Name',
    description='Single-node K3s bootstrap and teardown orchestrator with MetalLB and proxy support',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.8',
)
