from setuptools import setup

trove_classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: Twisted",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: Implementation :: CPython",
    "Topic :: Communications :: File Sharing",
    "Topic :: System :: Networking",
    "Topic :: Utilities",
    ]

setup(name="qrdrop",
      version="0.1.0",
      description="Move a file between two devices on the same network "
                  "by trading QR codes",
      long_description=open('README.md').read(),
      long_description_content_type='text/markdown',
      license="MIT",
      classifiers=trove_classifiers,
      python_requires=">=3.10",

      package_dir={"": "src"},
      packages=["qrdrop",
                "qrdrop.cli",
                "qrdrop.test",
                ],
      entry_points={
          "console_scripts":
          [
              "qrdrop = qrdrop.cli.cli:qrdrop",
          ]
      },
      install_requires=[
          "attrs >= 21.3.0", # 21.3.0 adds the "attrs" namespace
          "twisted >= 21.2.0", # 21.2.0 adds twisted.internet.testing
          "automat",
          "zope.interface",
          "cryptography",
          "tqdm >= 4.13.0", # 4.13.0 fixes crash on NetBSD
          "click",
          "humanize",
          "qrcode >= 8.0",
      ],
      extras_require={
          "dev": [
              "pytest",
              "hypothesis",
          ],
      },
      test_suite="qrdrop.test",
      )
