from setuptools import find_packages, setup

setup(
    name='cogs-broker',
    version='0.3.0',
    description='Node-local GPU claim broker with container-aware ownership',
    author='',
    author_email='',
    packages=find_packages(include=['cogs', 'cogs.*']),
    python_requires='>=3.11',
    install_requires=[
        'aiohttp',
        'marshmallow>=3.13',
        'msgspec',
        'prometheus-client',
        'psutil',
        'tenacity',
        'uvloop',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points={
        'console_scripts': [
            'cogsd=cogs.daemon:main',
            'cogs=cogs.client:main',
        ],
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
)
