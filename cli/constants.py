# Search bounds used when neither the config file nor the command line
# says otherwise. Each attempt deepens the visible history by DEPTH_STEP.
DEFAULT_INITIAL_DEPTH = 10
DEFAULT_DEPTH_STEP = 10
DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_PROBE_WORKERS = 1

# Grammar repositories declare their ABI in the generated parser, e.g.
#     #define LANGUAGE_VERSION 14
ABI_MARKER_NAME = "LANGUAGE_VERSION"
PARSER_FILENAME = "parser.c"
DEFAULT_SRC_DIR = "src"

# Ref searched when a recipe does not name one: the remote's default branch.
DEFAULT_REMOTE_REF = "HEAD"

# Private ref holding the tip observed by the first fetch, so that
# later deepening keeps scanning the same history.
PINNED_TIP_REF = "refs/treesmith/tip"

MIN_GIT_VERSION = "2.29"

C_COMPILER = "c-compiler"
CXX_COMPILER = "c++-compiler"

# Program names that all mean "the C compiler" (or C++ compiler) as far
# as a substitution is concerned.
TOOL_ALIASES = {
    "cc": C_COMPILER,
    "gcc": C_COMPILER,
    "clang": C_COMPILER,
    C_COMPILER: C_COMPILER,
    "c++": CXX_COMPILER,
    "g++": CXX_COMPILER,
    "clang++": CXX_COMPILER,
    CXX_COMPILER: CXX_COMPILER,
}

# What a bare logical name falls back to when nothing is substituted.
DEFAULT_PROGRAMS = {
    C_COMPILER: "cc",
    CXX_COMPILER: "c++",
}

OBJECT_GLOB = "*.o"

LEDGER_FILENAME = "installed.json"
CONFIG_FILENAME = "config.toml"
