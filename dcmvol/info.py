_version_major = 0
_version_minor = 1
_version_micro = 0
_version_extra = 'dev'
__version__ = "%s.%s.%s%s" % (_version_major,
                              _version_minor,
                              _version_micro,
                              _version_extra)

CLASSIFIERS = ["Development Status :: 3 - Alpha",
               "Environment :: Console",
               "Intended Audience :: Science/Research",
               "License :: OSI Approved :: MIT License",
               "Operating System :: OS Independent",
               "Programming Language :: Python",
               "Topic :: Scientific/Engineering :: Medical Science Apps."]

description = 'Organize DICOM files into a patient/study/series hierarchy and rebuild series volumes'

# Dependencies
setup_requires = []
install_requires = ['pydicom >= 2.0, < 3',
                    'numpy',
                    'click',
                    'toml',
                    'tree-format',
                    'typing_extensions',
                    'rich',
                    'attrs',
                    'cattrs',
                    ]
dependency_links = []
tests_require = ['pytest',
                 'pytest-asyncio',
                 'pytest-mypy',
                 'mypy',
                 ]

# Extra requirements for building documentation
extras_requires = {'doc':  ["sphinx", "numpydoc", "furo", "autodocsumm"],
                   'tests': tests_require,
                  }


NAME                = 'dcmvol'
AUTHOR              = "dcmvol developers"
AUTHOR_EMAIL        = ""
MAINTAINER          = "dcmvol developers"
MAINTAINER_EMAIL    = ""
DESCRIPTION         = description
LICENSE             = "MIT license"
CLASSIFIERS         = CLASSIFIERS
PLATFORMS           = "OS Independent"
ISRELEASE           = _version_extra == ''
VERSION             = __version__
SETUP_REQUIRES      = setup_requires
INSTALL_REQUIRES    = install_requires
TESTS_REQUIRE       = tests_require
EXTRAS_REQUIRES     = extras_requires
DEPENDENCY_LINKS    = dependency_links
PROVIDES            = ["dcmvol"]
