from setuptools import setup, find_packages

setup(name='privopen',
      version='0.0.1',
      description='A library for opening files with elevated privileges, through a helper process which passes the descriptors back',
      classifiers=[
          "Programming Language :: Python :: 3",
          "License :: OSI Approved :: MIT License",
          "Operating System :: POSIX :: Linux",
      ],
      keywords='linux privileges sudo file-descriptor scm_rights',
      license='MIT',
      packages=find_packages(),
      python_requires='>=3.11',
      install_requires=[
          'trio>=0.22',
          'outcome',
      ],
      extras_require={
          'test': ['pytest'],
      },
      entry_points={
          'console_scripts': [
              'privopen-helper=privopen.helper:main',
              'privcat=privopen.scripts.privcat:main',
          ],
      },
)
