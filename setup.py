from setuptools import setup
setup(
    name='mailaio',
    packages=[
        'mailaio',
    ],

    version='1.0.0',
    description='Asynchronous e-mail composition, DKIM signing and delivery',

    keywords=['smtp', 'mime', 'dkim', 'email', 'asyncio'],

    classifiers=[
        "Programming Language :: Python :: 3 :: Only",
        "Topic :: Communications :: Email",
    ],

    python_requires='>=3.7',

    install_requires=[
        'aioopenssl',
        'pyOpenSSL',
        'cryptography',
    ],

    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
)
