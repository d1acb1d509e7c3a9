# ImeiScanner.py
"""
Streamlit front end for IMEI / phone number scanning.

Three ways in:
  - upload a photo of the label (full detection pipeline)
  - live scan with a local webcam (scan session, 30 second timeout)
  - manual entry when nothing can be read
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import numpy as np
import streamlit as st

from imei_scanner import text_extraction
from imei_scanner.config import ScannerConfig
from imei_scanner.errors import REASON_MESSAGES, ScanErrorReason, ScannerError
from imei_scanner.pipeline import output_to_dict, process_image_bytes
from imei_scanner.session import ScanResult, ScanSession, scan_camera_once
from imei_scanner.utils import draw_barcode_boxes, get_image_stats, load_image_from_bytes


# LOGGING CONFIGURATION


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Keep an audit trail of every reported identifier
text_extraction.AUDIT_LOG_ENABLED = True


# STREAMLIT PAGE CONFIGURATION

st.set_page_config(
    page_title="IMEI Scanner",
    page_icon="📱",
    layout="wide",
    initial_sidebar_state="collapsed"
)


# CUSTOM CSS STYLING


st.markdown("""
    <style>
        .title {
            font-size: 42px;
            font-weight: bold;
            color: #1E90FF;
            margin-bottom: 10px;
        }

        .success-box {
            padding: 1.5rem;
            border-radius: 10px;
            background: #d4edda;
            border: 2px solid #28a745;
        }

        .warning-box {
            padding: 1.5rem;
            border-radius: 10px;
            background: #fff3cd;
            border: 2px solid #ffc107;
        }

        .error-box {
            padding: 1.5rem;
            border-radius: 10px;
            background: #f8d7da;
            border: 2px solid #dc3545;
        }

        .footer {
            text-align: center;
            color: #666;
            padding: 20px;
            font-size: 13px;
            border-top: 1px solid #ddd;
            margin-top: 40px;
        }

        .id-text {
            font-family: 'Courier New', monospace;
            font-size: 24px;
            font-weight: bold;
            letter-spacing: 1px;
        }
    </style>
""", unsafe_allow_html=True)


# HELPER FUNCTIONS


def display_result(out: Dict[str, Any]) -> None:
    """Show the reported identifier, coloured by resolution status."""
    status = out["status"]
    value = out["matched_text"]

    if status == "ok":
        label = "IMEI" if out["kind"] == "imei" else "Mobile number"
        st.markdown(f"""
        <div class="success-box">
            <h2>✅ {label} found</h2>
            <p class="id-text" style="color: #28a745;">{value}</p>
            <p><strong>📍 Stage:</strong> {(out.get("stage") or "manual").replace('_', ' ')}</p>
        </div>
        """, unsafe_allow_html=True)

    elif status == "validation_failed":
        st.markdown(f"""
        <div class="warning-box">
            <h3>⚠️ Unverified IMEI</h3>
            <p class="id-text">{value}</p>
            <p>{REASON_MESSAGES[ScanErrorReason.VALIDATION_FAILED]}</p>
        </div>
        """, unsafe_allow_html=True)

    else:
        display_error_reason(ScanErrorReason.NO_IDENTIFIER_FOUND)


def display_error_reason(reason: ScanErrorReason, detail: Optional[str] = None) -> None:
    st.markdown(f"""
    <div class="error-box">
        <h3>❌ {reason.value.replace('_', ' ').capitalize()}</h3>
        <p>{detail or REASON_MESSAGES[reason]}</p>
    </div>
    """, unsafe_allow_html=True)


def display_image_stats(img: np.ndarray) -> None:
    stats = get_image_stats(img)
    if not stats:
        st.warning("Could not calculate image statistics")
        return

    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Shape", str(stats.get("shape")))
    with col2:
        st.metric("Mean Brightness", f"{stats.get('mean', 0):.1f}")
    with col3:
        st.metric("Std Dev (Contrast)", f"{stats.get('std', 0):.1f}")


def display_debug(img: Optional[np.ndarray], result) -> None:
    """Collapsible details: decoded payloads, candidates, errors."""
    out = output_to_dict(result)

    with st.expander("🔧 Advanced Debug & Details", expanded=False):
        tab1, tab2, tab3 = st.tabs(["Decoded Text", "Candidates", "Errors"])

        with tab1:
            if out["raw_text"]:
                st.code(out["raw_text"], language="text")
                st.markdown(out["highlighted_text"].replace("\n", "  \n"))
            else:
                st.info("No decoded text")

            if img is not None and result.payloads:
                try:
                    boxed = draw_barcode_boxes(img, result.payloads, highlight=out["matched_text"])
                    st.image(boxed, channels="BGR", caption="Decoded symbols", use_container_width=True)
                except ValueError as e:
                    logger.error(f"Error drawing barcode boxes: {e}", exc_info=True)

        with tab2:
            st.write("**IMEI candidates:**", out["imei_candidates"] or "none")
            st.write("**Mobile candidates:**", out["mobile_candidates"] or "none")
            st.caption(f"Stages run: {', '.join(out['stages_run'])} ({out['elapsed']}s)")

        with tab3:
            if out["errors"]:
                for i, error in enumerate(out["errors"], 1):
                    st.warning(f"**{i}.** {error}")
            else:
                st.success("✅ No errors during processing")

    st.download_button(
        "📥 Download JSON",
        json.dumps(out, indent=2),
        file_name="imei_result.json",
        mime="application/json"
    )


def run_image_scan(image_bytes: bytes, caption: str) -> None:
    try:
        img_np = load_image_from_bytes(image_bytes)
    except ValueError as e:
        st.error(f"❌ Failed to load image: {str(e)}")
        return

    col1, col2 = st.columns([2, 1])
    with col1:
        st.image(img_np, channels="BGR", caption=caption, use_container_width=True)
    with col2:
        st.subheader("📊 Image Info")
        display_image_stats(img_np)

    if st.button("🚀 Scan Image", type="primary", use_container_width=True, key=f"scan_{caption}"):
        with st.spinner("⏳ Running detection stages..."):
            result = process_image_bytes(image_bytes)
        logger.info(f"Image scan complete: {result.matched_text} ({result.status.value})")

        display_result(output_to_dict(result))
        display_debug(img_np, result)


def run_live_scan(config: ScannerConfig) -> None:
    with st.spinner(f"📷 Scanning for up to {config.scan_timeout:.0f} seconds..."):
        try:
            result: ScanResult = asyncio.run(scan_camera_once(config=config))
        except ScannerError as e:
            logger.warning(f"Live scan ended without result: {e.reason.value}")
            display_error_reason(e.reason, e.message)
            return

    if result.output is not None:
        display_result(output_to_dict(result.output))
        display_debug(None, result.output)


def run_manual_entry(text: str) -> None:
    async def _submit() -> ScanResult:
        async with ScanSession() as session:
            return session.submit_manual_entry(text)

    try:
        result = asyncio.run(_submit())
    except ValueError as e:
        st.error(str(e))
        return

    st.markdown(f"""
    <div class="success-box">
        <h3>✍️ Entered manually</h3>
        <p class="id-text">{result.value}</p>
    </div>
    """, unsafe_allow_html=True)


# MAIN APPLICATION


def main():
    st.markdown("<h1 class='title'>📱 IMEI Scanner</h1>", unsafe_allow_html=True)
    st.markdown("### Read an IMEI or phone number from a device label, box or screen")
    st.write("Barcodes via **pyzbar**, QR codes via **OpenCV**, printed text via **PaddleOCR**")
    st.write("---")

    upload_tab, snapshot_tab, live_tab, manual_tab = st.tabs(
        ["📤 Upload", "📸 Snapshot", "🎥 Live Camera", "✍️ Manual Entry"]
    )

    with upload_tab:
        uploaded_file = st.file_uploader(
            "Upload a label image",
            type=["png", "jpg", "jpeg", "webp"],
            help="Supported formats: PNG, JPG, JPEG, WEBP",
            label_visibility="collapsed"
        )
        if uploaded_file is None:
            st.info("👆 Upload a photo of the IMEI label to begin")
        else:
            run_image_scan(uploaded_file.getvalue(), "Uploaded label")

    with snapshot_tab:
        snapshot = st.camera_input("Take a photo of the label")
        if snapshot is not None:
            run_image_scan(snapshot.getvalue(), "Camera snapshot")

    with live_tab:
        st.caption("Uses a webcam attached to the machine running this app.")
        device = st.text_input("Camera index", value="0")
        if st.button("▶️ Start Live Scan", type="primary"):
            run_live_scan(ScannerConfig(device_id=device.strip() or None))

    with manual_tab:
        entry = st.text_input("IMEI or phone number")
        if st.button("Submit"):
            run_manual_entry(entry)

    st.write("---")
    st.markdown("""
    <div class="footer">
        IMEI1 priority • Luhn validation • Open-source • No external APIs • v1.0.0
    </div>
    """, unsafe_allow_html=True)


if __name__ == "__main__":
    main()
