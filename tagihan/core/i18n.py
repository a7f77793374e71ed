from __future__ import annotations

from flask import current_app, has_request_context, session

SUPPORTED_LANGS = {"id", "en"}

I18N: dict[str, dict[str, str]] = {
    "status.AWAITING_REGISTRATION": {"id": "Menunggu Registrasi", "en": "Awaiting registration"},
    "status.UNDER_REVIEW": {"id": "Tinjau Kembali", "en": "Under review"},
    "status.AWAITING_VERIFICATION": {"id": "Menunggu Verifikasi", "en": "Awaiting verification"},
    "status.FORWARDED": {"id": "Diteruskan", "en": "Forwarded"},
    "status.RETURNED": {"id": "Dikembalikan", "en": "Returned"},
    "status.COMPLETED": {"id": "Selesai", "en": "Completed"},
    "error.workflow": {"id": "Permintaan tidak dapat diproses", "en": "The request could not be processed"},
    "error.stale_state": {
        "id": "Status tagihan sudah berubah. Muat ulang data lalu coba lagi.",
        "en": "The document status has changed. Reload it and try again.",
    },
    "error.terminal_state": {
        "id": "Tagihan sudah selesai (SP2D terbit) dan tidak dapat diubah lagi.",
        "en": "The document is completed (SP2D issued) and can no longer be changed.",
    },
    "error.revision_window_closed": {
        "id": "Batas waktu perbaikan sudah lewat atau tagihan tidak dapat diperbaiki lagi.",
        "en": "The revision deadline has passed or the document can no longer be revised.",
    },
    "error.already_locked": {
        "id": "Tagihan ini sedang diproses oleh verifikator lain.",
        "en": "This document is being processed by another reviewer.",
    },
    "error.duplicate_sequence": {
        "id": "Nomor urut ini sudah dipakai untuk SKPD dan jadwal yang sama pada tahun ini. Gunakan nomor lain.",
        "en": "This sequence number is already used for this unit and schedule this year. Choose another one.",
    },
    "error.number_collision": {
        "id": "Nomor dokumen bentrok dengan proses lain yang bersamaan. Silakan ulangi.",
        "en": "The document number collided with a concurrent request. Please retry.",
    },
    "error.missing_reference_data": {
        "id": "Data referensi (kode SKPD, kode wilayah atau jadwal) belum lengkap. Hubungi administrator.",
        "en": "Reference data (unit code, region code or schedule) is missing. Contact an administrator.",
    },
    "error.validation": {"id": "Data tagihan tidak valid", "en": "Invalid document data"},
    "error.permission_denied": {
        "id": "Peran Anda tidak diizinkan melakukan tindakan ini.",
        "en": "Your role is not allowed to perform this action.",
    },
    "error.not_found": {"id": "Tagihan tidak ditemukan", "en": "Document not found"},
    "error.unauthorized": {"id": "Silakan masuk terlebih dahulu", "en": "Please sign in first"},
}


def get_locale() -> str:
    default = "id"
    if has_request_context():
        default = current_app.config.get("DEFAULT_LANG", "id")
        lang = session.get("lang", default)
    else:
        lang = default
    if lang not in SUPPORTED_LANGS:
        return "id"
    return lang


def translate(key: str) -> str:
    lang = get_locale()
    return I18N.get(key, {}).get(lang, key)
