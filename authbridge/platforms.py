"""
Catalogue of third-party platforms and client surfaces.
"""

# WeChat family.
WECHAT_MP = "wechat_mp"
WECHAT_MINIAPP = "wechat_miniapp"
WECHAT_OPEN = "wechat_open"
WEWORK = "wework"

# Alipay family.
ALIPAY_WEB = "alipay_web"
ALIPAY_MINIAPP = "alipay_miniapp"
ALIPAY_APP = "alipay_app"

# QQ family.
QQ_WEB = "qq_web"
QQ_APP = "qq_app"

WEIBO = "weibo"
DINGTALK = "dingtalk"
BAIDU = "baidu"
BYTEDANCE = "bytedance"

# Developer platforms.
GITHUB = "github"
GITLAB = "gitlab"
GITEE = "gitee"

# International.
GOOGLE = "google"
FACEBOOK = "facebook"
APPLE = "apple"
MICROSOFT = "microsoft"
LINKEDIN = "linkedin"
TWITTER = "twitter"

PLATFORMS = {
    WECHAT_MP: "WeChat Official Account",
    WECHAT_MINIAPP: "WeChat Mini Program",
    WECHAT_OPEN: "WeChat Open Platform",
    WEWORK: "WeCom",
    ALIPAY_WEB: "Alipay Web",
    ALIPAY_MINIAPP: "Alipay Mini Program",
    ALIPAY_APP: "Alipay App",
    QQ_WEB: "QQ Connect",
    QQ_APP: "QQ Mobile",
    WEIBO: "Weibo",
    DINGTALK: "DingTalk",
    BAIDU: "Baidu",
    BYTEDANCE: "ByteDance",
    GITHUB: "GitHub",
    GITLAB: "GitLab",
    GITEE: "Gitee",
    GOOGLE: "Google",
    FACEBOOK: "Facebook",
    APPLE: "Apple",
    MICROSOFT: "Microsoft",
    LINKEDIN: "LinkedIn",
    TWITTER: "Twitter",
}
DOMESTIC_PLATFORMS = (
    WECHAT_MP,
    WECHAT_MINIAPP,
    WECHAT_OPEN,
    ALIPAY_WEB,
    ALIPAY_MINIAPP,
    QQ_WEB,
    WEIBO,
)
DEVELOPER_PLATFORMS = (GITHUB, GITLAB, GITEE)

CLIENT_WEB = "web"
CLIENT_MINIAPP = "miniapp"
CLIENT_APP = "app"
CLIENT_DESKTOP = "desktop"

CLIENT_TYPES = {
    CLIENT_WEB: "Web",
    CLIENT_MINIAPP: "Mini program",
    CLIENT_APP: "Mobile app",
    CLIENT_DESKTOP: "Desktop app",
}
MOBILE_CLIENT_TYPES = (CLIENT_MINIAPP, CLIENT_APP)
DESKTOP_CLIENT_TYPES = (CLIENT_WEB, CLIENT_DESKTOP)

# Login without a state token is only accepted for these platforms. Their client
# SDKs never round-trip a state value; the single-use, minutes-lived code is the
# only replay protection. Keep this list short and review any addition.
STATELESS_LOGIN_PLATFORMS = (WECHAT_MINIAPP, ALIPAY_MINIAPP)

# Client type assumed when a login arrives with neither state nor client type hint.
STATELESS_CLIENT_TYPE_DEFAULTS = {
    WECHAT_MINIAPP: CLIENT_MINIAPP,
    ALIPAY_MINIAPP: CLIENT_MINIAPP,
    WECHAT_MP: CLIENT_WEB,
    WECHAT_OPEN: CLIENT_APP,
    ALIPAY_APP: CLIENT_APP,
    QQ_APP: CLIENT_APP,
}


def is_valid_platform(platform: str) -> bool:
    return platform in PLATFORMS


def platform_name(platform: str) -> str:
    return PLATFORMS.get(platform, "Unknown platform")


def is_valid_client_type(client_type: str) -> bool:
    return client_type in CLIENT_TYPES


def client_type_name(client_type: str) -> str:
    return CLIENT_TYPES.get(client_type, "Unknown client")


def is_mobile_client_type(client_type: str) -> bool:
    return client_type in MOBILE_CLIENT_TYPES


def is_desktop_client_type(client_type: str) -> bool:
    return client_type in DESKTOP_CLIENT_TYPES


def default_client_type(platform: str) -> str:
    """
    Client type used for a state-less login when the caller sent no hint.
    """
    return STATELESS_CLIENT_TYPE_DEFAULTS.get(platform, CLIENT_WEB)


def catalogue() -> dict:
    return {
        "all_platforms": dict(PLATFORMS),
        "domestic_platforms": {p: PLATFORMS[p] for p in DOMESTIC_PLATFORMS},
        "developer_platforms": {p: PLATFORMS[p] for p in DEVELOPER_PLATFORMS},
        "client_types": dict(CLIENT_TYPES),
    }
