"""Yoruba OCR: image-to-tensor preprocessing and single-flight prediction orchestration."""
