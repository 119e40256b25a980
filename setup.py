from setuptools import setup

version = '0.1'

with open("README.md", "r", encoding="utf-8") as f:
    long_descr = f.read()

setup(
    name='pyxair',
    packages=['pyxair'],
    version=version,
    license='Apache 2.0',
    description='Control Behringer X-Air digital mixers over OSC',
    long_description=long_descr,
    long_description_content_type='text/markdown',
    author='pyxair contributors',
    keywords=['Behringer', 'X-Air', 'XR18', 'OSC', 'Mixer'],
    python_requires='>=3.10',
    install_requires=[
        "python-osc>=1.8.0",
        "psutil>=5.9.0"
    ],
    extras_require={
        'test': [
            "pytest>=7.0",
            "pytest-asyncio>=0.21"
        ]
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Topic :: Multimedia :: Sound/Audio :: Mixers',
        'License :: OSI Approved :: Apache Software License',
        'Programming Language :: Python :: 3.10'
    ],
)
