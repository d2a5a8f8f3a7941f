# General
KERNEL_NAME = "ESK"
KERNEL_DEFCONFIG = "gki_defconfig"
KBUILD_BUILD_USER = "builder"
KBUILD_BUILD_HOST = "esk"
TIMEZONE = "Asia/Ho_Chi_Minh"
RELEASE_REPO = "ESK-Project/esk-releases"
RELEASE_BRANCH = "main"

# Target architecture and compiler
ARCH = "arm64"
CROSS_COMPILE_PREFIX = "aarch64-linux-gnu-"
CC = "ccache clang"

# Clang LTO mode: thin | full
CLANG_LTO = "thin"

# Sources (host:owner/repo@ref)
KERNEL_REPO = "github.com:ESK-Project/android12-5.10-gki@main"
ANYKERNEL_REPO = "github.com:ESK-Project/AnyKernel3@gki"
SUSFS_REPO = "gitlab.com:simonpunk/susfs4ksu@gki-android12-5.10"
WILD_PATCHES_REPO = "github.com:WildKernels/kernel_patches@main"

# Release assets fetched through the GitHub API
CLANG_RELEASE_API = "https://api.github.com/repos/bachnxuan/aosp_clang_mirror/releases/latest"
SUKISU_PATCH_RELEASE_API = "https://api.github.com/repos/SukiSU-Ultra/SukiSU_KernelPatch_patch/releases/latest"

# External setup scripts
KSU_SETUP_URL = "https://raw.githubusercontent.com/{repo}/{ref}/kernel/setup.sh"
BBG_SETUP_URL = "https://github.com/vc-teahouse/Baseband-guard/raw/main/setup.sh"

TELEGRAM_API = "https://api.telegram.org/bot{token}/{method}"

# AnyKernel3 static binaries compressed with upx
UPX_LIST = [
    "tools/zstd",
    "tools/fec",
    "tools/httools_static",
    "tools/lptools_static",
    "tools/magiskboot",
    "tools/magiskpolicy",
    "tools/snapshotupdater_static",
]
