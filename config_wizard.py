import configparser
from getpass import getpass


def run_cli_setup_wizard(config_path: str = "config.ini", template_path: str = "config.ini.template") -> None:
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str
    parser.read([template_path, config_path], encoding="utf-8")
    defaults = parser["DEFAULT"]

    def _get(name: str, fallback: str = "") -> str:
        for key, value in defaults.items():
            if key.upper() == name:
                return str(value).strip()
        return fallback

    def _set(name: str, value: str) -> None:
        for key in list(defaults.keys()):
            if key.upper() == name:
                defaults[key] = value
                return
        defaults[name] = value

    def _prompt(name: str, label: str, *, secret: bool = False, required: bool = True) -> str:
        current = _get(name)
        prompt = f"{label}"
        if current and not secret:
            prompt += f" [{current}]"
        prompt += ": "
        while True:
            raw = getpass(prompt) if secret else input(prompt)
            value = raw.strip() or current
            if value or not required:
                _set(name, value)
                return value
            print("This value is required.")

    print("CLI Setup Wizard")
    print("Press Enter to accept defaults shown in brackets.\n")
    _prompt("TARGET_URL", "Reservation page URL")
    _prompt("WINDOW_START", "Reload window start (second of minute)")
    _prompt("WINDOW_END", "Reload window end (second of minute, exclusive)")
    _prompt("MAX_RELOADS_PER_MINUTE", "Maximum reloads per minute")
    _prompt("MAX_ATTEMPTS_PER_MINUTE", "Maximum change attempts per minute")
    _prompt("CHROME_PROFILE_DIR", "Chrome profile directory to reuse (blank for a fresh profile)", required=False)

    answer = input("\nConfigure email notification on success? [y/N]: ").strip().lower()
    if answer in ("y", "yes"):
        _prompt("SMTP_SERVER", "SMTP server")
        _prompt("SMTP_PORT", "SMTP port")
        smtp_user = _prompt("SMTP_USER", "SMTP username")
        _prompt("SMTP_PASS", "SMTP password / app password", secret=True)
        _prompt("NOTIFY_EMAIL", "Notification email", required=False)
        if not _get("NOTIFY_EMAIL") and smtp_user:
            _set("NOTIFY_EMAIL", smtp_user)

    with open(config_path, "w", encoding="utf-8") as handle:
        parser.write(handle)
    print(f"\nSaved configuration to {config_path}")
