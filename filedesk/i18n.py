"""English and Russian interface strings."""

from typing import Dict, Optional

from flask import g, has_request_context, request, session

from .config import SUPPORTED_LOCALES

DEFAULT_LOCALE = "en"

MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "app_title": "File Service",
        "title_login": "Sign in",
        "title_admin": "Administration",
        "title_dashboard": "Files",
        "title_settings": "Console settings",
        "title_viewer": "Viewer",
        "login_heading": "Sign in",
        "username": "Username",
        "password": "Password",
        "alias": "Display name",
        "email": "Email",
        "notify_by_email": "Notify by email",
        "sign_in": "Sign in",
        "sign_out": "Sign out",
        "login_failed": "Login failed",
        "login_success": "Logged in successfully.",
        "logged_out": "You have been logged out.",
        "login_required": "Please log in to continue.",
        "admin_required": "Administrator access is required for that page.",
        "session_expired": "Your session has expired. Please log in again.",
        "users": "Users",
        "create_user": "Create user",
        "create": "Create",
        "save": "Save",
        "cancel": "Cancel",
        "delete": "Delete",
        "reset_password": "Reset password",
        "new_password": "New password",
        "password_hint": "Leave empty to generate a password",
        "permissions": "Folder permissions",
        "no_permissions": "No folder permissions yet.",
        "folder_prefix": "Folder prefix",
        "grant": "Grant",
        "revoke": "Revoke",
        "admin_settings": "Administrator account",
        "console_settings": "Console settings",
        "generated_credentials": "Credentials (shown once)",
        "user_created": "User {username} created.",
        "user_updated": "User {username} updated.",
        "user_deleted": "User deleted.",
        "password_reset": "Password for {username} has been reset.",
        "permission_added": "Permission granted.",
        "permission_revoked": "Permission revoked.",
        "admin_updated": "Administrator account updated. Please log in again.",
        "settings_saved": "Settings saved.",
        "confirm_delete_user": "Delete this user?",
        "confirm_revoke": "Revoke this permission?",
        "confirm_delete_items": "Delete the selected items?",
        "error_fetch_users": "Failed to fetch users",
        "error_create_user": "Failed to create user",
        "error_update_user": "Failed to update user",
        "error_delete_user": "Failed to delete user",
        "error_reset_password": "Failed to reset password",
        "error_add_permission": "Failed to add permission",
        "error_revoke_permission": "Failed to revoke permission",
        "error_update_admin": "Failed to update admin account",
        "error_fetch_files": "Failed to fetch files",
        "current_path": "Current path",
        "up": "Up",
        "select_all": "Select all",
        "selected": "Selected",
        "download": "Download",
        "download_selected": "Download selected",
        "move": "Move",
        "copy": "Copy",
        "destination": "Destination folder",
        "access_type": "Access",
        "read_only": "View only",
        "read_and_download": "View and download",
        "set_access": "Set access",
        "new_folder": "New folder",
        "folder_name": "Folder name",
        "upload": "Upload",
        "uploads": "Uploads",
        "viewed_by": "Viewed by",
        "never_viewed": "Not viewed yet",
        "empty_folder": "This folder is empty.",
        "folder_created": "Folder {name} created.",
        "items_moved": "{count} {items} moved.",
        "items_copied": "{count} {items} copied.",
        "items_deleted": "{count} {items} deleted.",
        "access_updated": "Access updated for {count} {files}.",
        "files_uploaded": "{count} {files} uploaded.",
        "upload_failed": "Upload of {name} failed: {error}",
        "nothing_selected": "Select at least one item first.",
        "unknown_action": "Unknown action.",
        "archive_partial": "{count} {files} could not be downloaded and were skipped.",
        "viewer_unavailable": "This file cannot be opened in view mode.",
        "page_of": "Page {current} of {total}",
        "back": "Back",
        "close": "Close",
        "item_one": "item",
        "item_few": "items",
        "item_many": "items",
        "file_one": "file",
        "file_few": "files",
        "file_many": "files",
        "user_one": "user",
        "user_few": "users",
        "user_many": "users",
        "administrator": "Administrator",
        "actions": "Actions",
        "created": "Created",
        "setting_api_base_url": "Backend URL",
        "setting_proxy_hosts": "Storage hosts to proxy",
        "setting_proxy_prefix": "Proxy path prefix",
        "setting_default_locale": "Default language",
        "setting_request_timeout_seconds": "Backend timeout, seconds",
        "setting_success_message_ms": "Success banner duration, ms",
        "setting_error_message_ms": "Error banner duration, ms",
        "setting_login_rate_limit_per_minute": "Login attempts per minute",
        "setting_max_upload_size_mb": "Maximum upload size, MB",
        "setting_archive_max_files": "Maximum files per archive",
        "setting_upload_record_ttl_minutes": "Keep finished uploads, minutes",
        "not_found": "Page not found",
    },
    "ru": {
        "app_title": "Файловый сервис",
        "title_login": "Вход",
        "title_admin": "Администрирование",
        "title_dashboard": "Файлы",
        "title_settings": "Настройки консоли",
        "title_viewer": "Просмотр",
        "login_heading": "Вход",
        "username": "Логин",
        "password": "Пароль",
        "alias": "Отображаемое имя",
        "email": "Электронная почта",
        "notify_by_email": "Уведомлять по почте",
        "sign_in": "Войти",
        "sign_out": "Выйти",
        "login_failed": "Не удалось войти",
        "login_success": "Вы успешно вошли.",
        "logged_out": "Вы вышли из системы.",
        "login_required": "Войдите, чтобы продолжить.",
        "admin_required": "Эта страница доступна только администраторам.",
        "session_expired": "Сессия истекла. Войдите снова.",
        "users": "Пользователи",
        "create_user": "Создать пользователя",
        "create": "Создать",
        "save": "Сохранить",
        "cancel": "Отмена",
        "delete": "Удалить",
        "reset_password": "Сбросить пароль",
        "new_password": "Новый пароль",
        "password_hint": "Оставьте пустым, чтобы сгенерировать пароль",
        "permissions": "Доступ к папкам",
        "no_permissions": "Доступов к папкам пока нет.",
        "folder_prefix": "Папка",
        "grant": "Выдать",
        "revoke": "Отозвать",
        "admin_settings": "Учётная запись администратора",
        "console_settings": "Настройки консоли",
        "generated_credentials": "Учётные данные (показываются один раз)",
        "user_created": "Пользователь {username} создан.",
        "user_updated": "Пользователь {username} обновлён.",
        "user_deleted": "Пользователь удалён.",
        "password_reset": "Пароль пользователя {username} сброшен.",
        "permission_added": "Доступ выдан.",
        "permission_revoked": "Доступ отозван.",
        "admin_updated": "Учётная запись администратора обновлена. Войдите снова.",
        "settings_saved": "Настройки сохранены.",
        "confirm_delete_user": "Удалить этого пользователя?",
        "confirm_revoke": "Отозвать этот доступ?",
        "confirm_delete_items": "Удалить выбранные элементы?",
        "error_fetch_users": "Не удалось загрузить пользователей",
        "error_create_user": "Не удалось создать пользователя",
        "error_update_user": "Не удалось обновить пользователя",
        "error_delete_user": "Не удалось удалить пользователя",
        "error_reset_password": "Не удалось сбросить пароль",
        "error_add_permission": "Не удалось выдать доступ",
        "error_revoke_permission": "Не удалось отозвать доступ",
        "error_update_admin": "Не удалось обновить учётную запись администратора",
        "error_fetch_files": "Не удалось загрузить файлы",
        "current_path": "Текущий путь",
        "up": "Вверх",
        "select_all": "Выбрать все",
        "selected": "Выбрано",
        "download": "Скачать",
        "download_selected": "Скачать выбранное",
        "move": "Переместить",
        "copy": "Копировать",
        "destination": "Папка назначения",
        "access_type": "Доступ",
        "read_only": "Только просмотр",
        "read_and_download": "Просмотр и скачивание",
        "set_access": "Изменить доступ",
        "new_folder": "Новая папка",
        "folder_name": "Имя папки",
        "upload": "Загрузить",
        "uploads": "Загрузки",
        "viewed_by": "Просмотрено",
        "never_viewed": "Ещё не просматривался",
        "empty_folder": "Папка пуста.",
        "folder_created": "Папка {name} создана.",
        "items_moved": "Перемещено: {count} {items}.",
        "items_copied": "Скопировано: {count} {items}.",
        "items_deleted": "Удалено: {count} {items}.",
        "access_updated": "Доступ обновлён: {count} {files}.",
        "files_uploaded": "Загружено: {count} {files}.",
        "upload_failed": "Не удалось загрузить {name}: {error}",
        "nothing_selected": "Сначала выберите хотя бы один элемент.",
        "unknown_action": "Неизвестное действие.",
        "archive_partial": "Не удалось скачать {count} {files}, они пропущены.",
        "viewer_unavailable": "Этот файл не может быть открыт в режиме просмотра.",
        "page_of": "Страница {current} из {total}",
        "back": "Назад",
        "close": "Закрыть",
        "item_one": "элемент",
        "item_few": "элемента",
        "item_many": "элементов",
        "file_one": "файл",
        "file_few": "файла",
        "file_many": "файлов",
        "user_one": "пользователь",
        "user_few": "пользователя",
        "user_many": "пользователей",
        "administrator": "Администратор",
        "actions": "Действия",
        "created": "Создан",
        "setting_api_base_url": "Адрес бэкенда",
        "setting_proxy_hosts": "Проксируемые хосты хранилища",
        "setting_proxy_prefix": "Префикс пути прокси",
        "setting_default_locale": "Язык по умолчанию",
        "setting_request_timeout_seconds": "Таймаут запросов к бэкенду, секунды",
        "setting_success_message_ms": "Показ сообщений об успехе, мс",
        "setting_error_message_ms": "Показ сообщений об ошибке, мс",
        "setting_login_rate_limit_per_minute": "Попыток входа в минуту",
        "setting_max_upload_size_mb": "Максимальный размер загрузки, МБ",
        "setting_archive_max_files": "Максимум файлов в архиве",
        "setting_upload_record_ttl_minutes": "Хранить завершённые загрузки, минуты",
        "not_found": "Страница не найдена",
    },
}


def plural_form(number: int, one: str, few: str, many: str) -> str:
    """Pick the Russian plural form of a word for *number*.

    The same rule is used for English catalogues, where ``few`` and
    ``many`` are identical.
    """
    n = abs(number) % 100
    if 5 <= n <= 20:
        return many
    n %= 10
    if n == 1:
        return one
    if 2 <= n <= 4:
        return few
    return many


def resolve_locale(default: str = DEFAULT_LOCALE) -> str:
    if not has_request_context():
        return default
    default = getattr(g, "default_locale", None) or default
    chosen = session.get("lang")
    if chosen in SUPPORTED_LOCALES:
        return chosen
    accept_language = request.headers.get("Accept-Language", "")
    if "ru" in accept_language.lower():
        return "ru"
    return default if default in SUPPORTED_LOCALES else DEFAULT_LOCALE


def translate(key: str, locale: str, **values) -> str:
    catalogue = MESSAGES.get(locale) or MESSAGES[DEFAULT_LOCALE]
    template = catalogue.get(key) or MESSAGES[DEFAULT_LOCALE].get(key) or key
    if values:
        try:
            return template.format(**values)
        except (KeyError, IndexError, ValueError):
            return template
    return template


def counted(noun: str, count: int, locale: str) -> str:
    """Return the catalogue word ``noun`` in the plural form matching *count*."""

    return plural_form(
        count,
        translate(f"{noun}_one", locale),
        translate(f"{noun}_few", locale),
        translate(f"{noun}_many", locale),
    )


def gettext(key: str, locale: Optional[str] = None, **values) -> str:
    return translate(key, locale or resolve_locale(), **values)
