from setuptools import setup, find_packages

setup(
    name='slide-beacon',
    version='1.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=open("requirements.txt").read().splitlines(),
    extras_require={
        'test': ['pytest', 'pytest-asyncio'],
    },
    entry_points={
        'console_scripts': [
            'slide-beacon = slide_beacon.__main__:main'
        ]
    },
    description='Broadcasts a URL as an Eddystone-URL Bluetooth LE beacon and/or an mDNS service record, '
                'controlled from the console or remotely over a WebSocket control socket.',
    classifiers=[
        'Programming Language :: Python :: 3',
    ],
    python_requires='>=3.9',
)
