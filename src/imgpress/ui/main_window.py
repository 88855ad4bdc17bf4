from __future__ import annotations

import threading
from pathlib import Path
from tkinter import filedialog, messagebox

import customtkinter as ctk

from imgpress.core.config import AppConfig
from imgpress.core.consent import ConsentState
from imgpress.core.export import detect_export_conflicts, save_artifact
from imgpress.core.formatting import describe_artifact, format_file_size, format_timestamp
from imgpress.core.ledger import ConversionLedger
from imgpress.core.models import (
    MAX_DIMENSION_RANGE,
    MAX_SIZE_MB_RANGE,
    QUALITY_RANGE,
    BatchResult,
    ConvertedArtifact,
    SourceImage,
)
from imgpress.core.pipeline import BatchConverter, filter_supported_images, read_source
from imgpress.core.settings import SettingsStore

THUMBNAIL_SIZE = (96, 96)


class MainWindow(ctk.CTk):
    def __init__(
        self,
        config: AppConfig,
        ledger: ConversionLedger,
        settings_store: SettingsStore,
        consent: ConsentState,
    ) -> None:
        super().__init__()

        self.title("Image Compressor")
        self.geometry("980x760")
        self.minsize(900, 680)

        self.config_data = config
        self.ledger = ledger
        self.settings_store = settings_store
        self.consent = consent
        self.converter = BatchConverter()
        self.settings_dialog: ctk.CTkToplevel | None = None

        self.batch_widgets: list[ctk.CTkFrame] = []
        self.history_widgets: list[ctk.CTkFrame] = []
        self.thumbnails: dict[str, ctk.CTkImage] = {}

        self._build_ui()
        self._refresh_consent_state()
        self._refresh_batch_list()
        self._refresh_history_list()
        self.protocol("WM_DELETE_WINDOW", self._on_close)

    def _build_ui(self) -> None:
        self.grid_columnconfigure(0, weight=1)
        self.grid_rowconfigure(1, weight=1)

        self.consent_frame = ctk.CTkFrame(self)
        self.consent_frame.grid_columnconfigure(0, weight=1)
        ctk.CTkLabel(
            self.consent_frame,
            text="This app stores your settings and conversion history on this computer. Accept to continue.",
            anchor="w",
        ).grid(row=0, column=0, sticky="ew", padx=12, pady=10)
        ctk.CTkButton(self.consent_frame, text="Accept", width=120, command=self._accept_consent).grid(
            row=0, column=1, padx=12, pady=10
        )

        self.tabs = ctk.CTkTabview(self)
        self.tabs.grid(row=1, column=0, sticky="nsew", padx=18, pady=(10, 18))

        self.compress_tab = self.tabs.add("Compress")
        self.history_tab = self.tabs.add("History")

        self._build_compress_tab(self.compress_tab)
        self._build_history_tab(self.history_tab)

    def _build_compress_tab(self, parent: ctk.CTkFrame) -> None:
        parent.grid_columnconfigure(0, weight=1)
        parent.grid_rowconfigure(3, weight=1)

        controls = ctk.CTkFrame(parent)
        controls.grid(row=0, column=0, sticky="ew", padx=0, pady=(0, 10))
        controls.grid_columnconfigure((0, 1), weight=1)

        self.select_files_button = ctk.CTkButton(controls, text="Select Images", command=self._pick_files)
        self.select_files_button.grid(row=0, column=0, padx=10, pady=10, sticky="ew")

        self.settings_button = ctk.CTkButton(controls, text="Settings", command=self._open_settings)
        self.settings_button.grid(row=0, column=1, padx=10, pady=10, sticky="ew")

        self.limits_label = ctk.CTkLabel(controls, text="")
        self.limits_label.grid(row=1, column=0, columnspan=2, sticky="w", padx=12, pady=(0, 10))
        self._refresh_limits_label()

        progress_frame = ctk.CTkFrame(parent)
        progress_frame.grid(row=1, column=0, sticky="ew", padx=0, pady=(0, 10))
        progress_frame.grid_columnconfigure(0, weight=1)

        self.progress_label = ctk.CTkLabel(progress_frame, text="Progress: 0/0")
        self.progress_label.grid(row=0, column=0, sticky="w", padx=12, pady=(10, 6))

        self.progress_bar = ctk.CTkProgressBar(progress_frame)
        self.progress_bar.set(0)
        self.progress_bar.grid(row=1, column=0, sticky="ew", padx=12, pady=(0, 12))

        self.logs_text = ctk.CTkTextbox(parent, height=110)
        self.logs_text.grid(row=2, column=0, sticky="ew", padx=0, pady=(0, 10))

        results_frame = ctk.CTkFrame(parent)
        results_frame.grid(row=3, column=0, sticky="nsew", padx=0, pady=(0, 0))
        results_frame.grid_columnconfigure(0, weight=1)
        results_frame.grid_rowconfigure(1, weight=1)

        ctk.CTkLabel(results_frame, text="Processed images").grid(row=0, column=0, sticky="w", padx=12, pady=(10, 6))
        self.clear_batch_button = ctk.CTkButton(
            results_frame, text="Clear", width=100, fg_color="#b22222", command=self._clear_batch
        )
        self.clear_batch_button.grid(row=0, column=1, sticky="e", padx=12, pady=(10, 6))

        self.batch_scroll = ctk.CTkScrollableFrame(results_frame)
        self.batch_scroll.grid(row=1, column=0, columnspan=2, sticky="nsew", padx=12, pady=(0, 12))
        self.batch_scroll.grid_columnconfigure(1, weight=1)

    def _build_history_tab(self, parent: ctk.CTkFrame) -> None:
        parent.grid_columnconfigure(0, weight=1)
        parent.grid_rowconfigure(1, weight=1)

        controls = ctk.CTkFrame(parent)
        controls.grid(row=0, column=0, sticky="ew", padx=0, pady=(0, 10))
        controls.grid_columnconfigure(0, weight=1)

        self.history_status_label = ctk.CTkLabel(controls, text="")
        self.history_status_label.grid(row=0, column=0, sticky="w", padx=12, pady=10)

        self.clear_history_button = ctk.CTkButton(
            controls, text="Clear History", width=120, fg_color="#b22222", command=self._clear_history
        )
        self.clear_history_button.grid(row=0, column=1, sticky="e", padx=12, pady=10)

        self.history_scroll = ctk.CTkScrollableFrame(parent)
        self.history_scroll.grid(row=1, column=0, sticky="nsew", padx=0, pady=(0, 0))
        self.history_scroll.grid_columnconfigure(1, weight=1)

    def _accept_consent(self) -> None:
        self.consent.grant()
        self._refresh_consent_state()
        self._log("Consent granted.")

    def _refresh_consent_state(self) -> None:
        granted = self.consent.granted
        if granted:
            self.consent_frame.grid_forget()
        else:
            self.consent_frame.grid(row=0, column=0, sticky="ew", padx=18, pady=(18, 0))

        state = "normal" if granted and not self.converter.is_processing else "disabled"
        for button in (
            self.select_files_button,
            self.settings_button,
            self.clear_batch_button,
            self.clear_history_button,
        ):
            button.configure(state=state)

    def _pick_files(self) -> None:
        if not self.consent.granted:
            return

        selected = filedialog.askopenfilenames(
            title="Select images",
            filetypes=[("Images", "*.jpg *.jpeg *.png *.webp"), ("All files", "*.*")],
        )
        if not selected:
            return

        filtered = filter_supported_images([Path(path) for path in selected])
        if not filtered:
            messagebox.showwarning("No supported images", "None of the selected files are supported.")
            return

        sources: list[SourceImage] = []
        for path in filtered:
            try:
                sources.append(read_source(path))
            except OSError as error:
                self._log(f"Could not read {path.name} ({error})")

        self._start_conversion(sources)

    def _start_conversion(self, sources: list[SourceImage]) -> None:
        if not sources:
            return

        self._clear_logs()
        self.progress_bar.set(0)
        self.progress_label.configure(text=f"Progress: 0/{len(sources)}")
        self._log(f"Starting conversion of {len(sources)} image(s)...")

        worker = threading.Thread(target=self._run_conversion, args=(sources,), daemon=True)
        worker.start()

    def _run_conversion(self, sources: list[SourceImage]) -> None:
        result = self.converter.run(
            sources,
            settings_store=self.settings_store,
            ledger=self.ledger,
            consent_granted=self.consent.granted,
            target_codec=self.config_data.target_codec,
            on_progress=self._on_progress,
            on_log=self._log,
            on_processing_changed=self._on_processing_changed,
        )
        self.after(0, lambda: self._finish_conversion(result))

    def _finish_conversion(self, result: BatchResult) -> None:
        summary = (
            f"Done. Converted: {result.succeeded}/{result.total}. "
            f"Skipped: {result.failed}. "
            f"Compression: {result.compression_rate_percent:.2f}% "
            f"({format_file_size(result.input_total_bytes)} → {format_file_size(result.output_total_bytes)})."
        )
        self._log(summary)
        self._refresh_batch_list()
        self._refresh_history_list()

        if result.skipped:
            details = "\n".join(f"- {item.name}: {item.reason}" for item in result.skipped[:10])
            if len(result.skipped) > 10:
                details += "\n..."
            messagebox.showwarning("Some images were skipped", f"{summary}\n\n{details}")

    def _on_progress(self, current: int, total: int) -> None:
        def update() -> None:
            fraction = current / total if total else 0
            self.progress_bar.set(fraction)
            self.progress_label.configure(text=f"Progress: {current}/{total}")

        self.after(0, update)

    def _on_processing_changed(self, processing: bool) -> None:
        def update() -> None:
            if processing:
                self.progress_label.configure(text="Processing...")
            self._refresh_consent_state()

        self.after(0, update)

    def _log(self, message: str) -> None:
        def append() -> None:
            self.logs_text.insert("end", message + "\n")
            self.logs_text.see("end")

        self.after(0, append)

    def _clear_logs(self) -> None:
        self.logs_text.delete("1.0", "end")

    def _open_settings(self) -> None:
        if self.settings_dialog is not None and self.settings_dialog.winfo_exists():
            self.settings_dialog.focus()
            return

        dialog = ctk.CTkToplevel(self)
        dialog.title("Settings")
        dialog.geometry("420x330")
        dialog.grid_columnconfigure(0, weight=1)
        self.settings_dialog = dialog

        settings = self.settings_store.snapshot()

        quality_label = ctk.CTkLabel(dialog, text="")
        quality_label.grid(row=0, column=0, sticky="w", padx=16, pady=(16, 4))
        quality_slider = ctk.CTkSlider(
            dialog,
            from_=QUALITY_RANGE[0] * 100,
            to=QUALITY_RANGE[1] * 100,
            number_of_steps=90,
        )
        quality_slider.set(settings.quality * 100)
        quality_slider.grid(row=1, column=0, sticky="ew", padx=16, pady=(0, 12))

        size_label = ctk.CTkLabel(dialog, text="")
        size_label.grid(row=2, column=0, sticky="w", padx=16, pady=(0, 4))
        size_slider = ctk.CTkSlider(
            dialog,
            from_=MAX_SIZE_MB_RANGE[0],
            to=MAX_SIZE_MB_RANGE[1],
            number_of_steps=99,
        )
        size_slider.set(settings.max_size_mb)
        size_slider.grid(row=3, column=0, sticky="ew", padx=16, pady=(0, 12))

        dimension_label = ctk.CTkLabel(dialog, text="")
        dimension_label.grid(row=4, column=0, sticky="w", padx=16, pady=(0, 4))
        dimension_slider = ctk.CTkSlider(
            dialog,
            from_=MAX_DIMENSION_RANGE[0],
            to=MAX_DIMENSION_RANGE[1],
            number_of_steps=35,
        )
        dimension_slider.set(settings.max_dimension_px)
        dimension_slider.grid(row=5, column=0, sticky="ew", padx=16, pady=(0, 12))

        def refresh_labels() -> None:
            current = self.settings_store.snapshot()
            quality_label.configure(text=f"Quality: {round(current.quality * 100)}%")
            size_label.configure(text=f"Max file size: {current.max_size_mb:.1f} MB")
            dimension_label.configure(text=f"Max width or height: {current.max_dimension_px}px")
            self._refresh_limits_label()

        quality_slider.configure(
            command=lambda value: (self.settings_store.update(quality=value / 100), refresh_labels())
        )
        size_slider.configure(
            command=lambda value: (self.settings_store.update(max_size_mb=round(value, 1)), refresh_labels())
        )
        dimension_slider.configure(
            command=lambda value: (self.settings_store.update(max_dimension_px=value), refresh_labels())
        )
        refresh_labels()

        def reset_defaults() -> None:
            defaults = self.settings_store.reset()
            quality_slider.set(defaults.quality * 100)
            size_slider.set(defaults.max_size_mb)
            dimension_slider.set(defaults.max_dimension_px)
            refresh_labels()

        buttons = ctk.CTkFrame(dialog, fg_color="transparent")
        buttons.grid(row=6, column=0, sticky="e", padx=16, pady=(4, 16))
        ctk.CTkButton(buttons, text="Reset to defaults", width=140, command=reset_defaults).grid(
            row=0, column=0, padx=(0, 8)
        )
        ctk.CTkButton(buttons, text="Close", fg_color="#b22222", command=dialog.destroy).grid(row=0, column=1)

    def _refresh_limits_label(self) -> None:
        settings = self.settings_store.snapshot()
        self.limits_label.configure(
            text=(
                f"Supports JPG, PNG, WEBP. Output: {self.config_data.target_codec.upper()}, "
                f"max {settings.max_size_mb:.1f} MB, max {settings.max_dimension_px}px, "
                f"quality {round(settings.quality * 100)}%"
            )
        )

    def _refresh_batch_list(self) -> None:
        self._clear_rows(self.batch_widgets)
        for artifact in self.ledger.current_batch_view():
            row = self._build_artifact_row(self.batch_scroll, artifact, removable=False)
            self.batch_widgets.append(row)
        self._prune_thumbnails()

    def _refresh_history_list(self) -> None:
        self._clear_rows(self.history_widgets)
        history = self.ledger.history_view()
        for artifact in history:
            row = self._build_artifact_row(self.history_scroll, artifact, removable=True)
            self.history_widgets.append(row)

        if history:
            self.history_status_label.configure(text=f"{len(history)} image(s) in history")
        else:
            self.history_status_label.configure(text="No history")
        self._prune_thumbnails()

    def _build_artifact_row(self, parent: ctk.CTkScrollableFrame, artifact: ConvertedArtifact, removable: bool) -> ctk.CTkFrame:
        row = ctk.CTkFrame(parent)
        row.grid(sticky="ew", padx=0, pady=(0, 6))
        row.grid_columnconfigure(1, weight=1)

        thumbnail = self._thumbnail_for(artifact)
        ctk.CTkLabel(row, text="", image=thumbnail).grid(row=0, column=0, rowspan=2, padx=8, pady=8)

        ctk.CTkLabel(row, text=artifact.output_name, anchor="w").grid(row=0, column=1, sticky="ew", padx=8, pady=(8, 0))
        details = f"{describe_artifact(artifact)}  ·  {format_timestamp(artifact.created_at)}"
        if not artifact.budget_met:
            details += "  ·  over size target"
        ctk.CTkLabel(row, text=details, anchor="w").grid(row=1, column=1, sticky="ew", padx=8, pady=(0, 8))

        ctk.CTkButton(row, text="Download", width=90, command=lambda: self._download(artifact)).grid(
            row=0, column=2, rowspan=2, padx=6, pady=8
        )
        if removable:
            ctk.CTkButton(
                row,
                text="Remove",
                width=80,
                fg_color="#b22222",
                command=lambda: self._remove_from_history(artifact.id),
            ).grid(row=0, column=3, rowspan=2, padx=(0, 8), pady=8)
        return row

    def _thumbnail_for(self, artifact: ConvertedArtifact) -> ctk.CTkImage | None:
        if artifact.id in self.thumbnails:
            return self.thumbnails[artifact.id]
        if artifact.preview.released:
            return None

        image = artifact.preview.open()
        image.thumbnail(THUMBNAIL_SIZE)
        thumbnail = ctk.CTkImage(light_image=image, dark_image=image, size=image.size)
        self.thumbnails[artifact.id] = thumbnail
        return thumbnail

    def _prune_thumbnails(self) -> None:
        for artifact_id in list(self.thumbnails):
            if artifact_id not in self.ledger:
                del self.thumbnails[artifact_id]

    def _clear_rows(self, rows: list[ctk.CTkFrame]) -> None:
        for row in rows:
            row.destroy()
        rows.clear()

    def _download(self, artifact: ConvertedArtifact) -> None:
        if not self.consent.granted:
            return

        selected = filedialog.askdirectory(title="Select download folder")
        if not selected:
            return

        directory = Path(selected)
        overwrite = False
        conflicts = detect_export_conflicts([artifact], directory)
        if conflicts.has_conflicts:
            overwrite = messagebox.askyesno(
                "File already exists",
                f"{artifact.output_name} already exists in this folder.\n\nDo you want to overwrite it?",
            )
            if not overwrite:
                return

        try:
            target = save_artifact(artifact, directory, overwrite=overwrite)
        except OSError as error:
            messagebox.showerror("Download failed", str(error))
            return
        self._log(f"Saved {target}")

    def _clear_batch(self) -> None:
        self.ledger.clear_batch()
        self._refresh_batch_list()

    def _remove_from_history(self, artifact_id: str) -> None:
        self.ledger.remove_from_history(artifact_id)
        self._refresh_history_list()

    def _clear_history(self) -> None:
        if not self.ledger.history_ids():
            return
        if not messagebox.askyesno("Clear history", "Remove every entry from the history?"):
            return
        self.ledger.clear_history()
        self._refresh_history_list()

    def _on_close(self) -> None:
        self.ledger.close()
        # Handles the ledger never took ownership of.
        self.ledger.registry.release_all()
        self.destroy()
