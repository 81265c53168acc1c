import asyncio

import cv2
import numpy as np

from compare_core import AfterCaptured, BeforeCaptured
from similarity import BAND_COLORS, similarity_band, similarity_percent

WINDOW_NAME = "Before / After Comparison"
MIRROR_UI_DEFAULT = False

DISPLAY_W = 960
DISPLAY_H = 720

BEFORE_OPACITY = 0.5

# =========================
# UI BUTTONS (CIRCLES)
# =========================
BTN_RADIUS = 26
BTN_MARGIN = 20
BTN_SPACING = 70

BTN_ENABLED = (60, 200, 60)
BTN_DISABLED = (90, 90, 90)
BTN_RESET = (60, 60, 200)

# (action, label, key)
BUTTONS = (
    ("before", "Before", "b"),
    ("after", "After", "a"),
    ("reset", "Reset", "r"),
    ("switch", "Switch", "c"),
)

KEY_HELP = "ESC quit | B before | A after | R reset | C switch camera | M mirror"

# =========================
# UI FONT (GLOBAL)
# =========================
UI_FONT = cv2.FONT_HERSHEY_DUPLEX

FONT_BIG = {"face": UI_FONT, "scale": 1.5, "thickness": 3}
FONT_MED = {"face": UI_FONT, "scale": 1.0, "thickness": 2}
FONT_SMALL = {"face": UI_FONT, "scale": 0.5, "thickness": 1}


def sanitize_text(s):
    """OpenCV Hershey fonts are ASCII-ish; replace common unicode so it doesn't show '??'."""
    if s is None:
        return ""
    s = str(s)
    return (
        s.replace("·", "-")
        .replace("•", "-")
        .replace("–", "-")
        .replace("—", "-")
        .replace("’", "'")
    )


def put_text(img, text, org, preset, color=(255, 255, 255)):
    cv2.putText(
        img,
        sanitize_text(text),
        org,
        preset["face"],
        preset["scale"],
        color,
        preset["thickness"],
    )


# -------------------------
# Drawing + hit-test helpers
# -------------------------
def draw_circle_button(img, cx, cy, r, color):
    cv2.circle(img, (cx, cy), r, color, -1)


def point_in_circle(px, py, cx, cy, r):
    return (px - cx) ** 2 + (py - cy) ** 2 <= r ** 2


def fit_to_display(frame_bgr, w=DISPLAY_W, h=DISPLAY_H):
    if frame_bgr is None:
        return np.zeros((h, w, 3), dtype=np.uint8)
    if frame_bgr.shape[1] == w and frame_bgr.shape[0] == h:
        return frame_bgr.copy()
    return cv2.resize(frame_bgr, (w, h), interpolation=cv2.INTER_AREA)


def blend_before(display, before_bgr, opacity=BEFORE_OPACITY):
    overlay = fit_to_display(before_bgr, display.shape[1], display.shape[0])
    display[:] = cv2.addWeighted(overlay, opacity, display, 1.0 - opacity, 0)


def apply_ui_mirror(frame_bgr, mirror_ui):
    return cv2.flip(frame_bgr, 1) if mirror_ui else frame_bgr


# -------------------------
# Scene composition
# -------------------------
def compose_scene(state, live_frame, mirror_ui=False):
    """
    Frozen: the after frame alone.
    Otherwise: the live feed, with the before frame at half opacity on top.
    """
    if isinstance(state, AfterCaptured):
        return fit_to_display(state.after.to_bgr())

    live_bgr = live_frame.to_bgr() if live_frame is not None else None
    display = apply_ui_mirror(fit_to_display(live_bgr), mirror_ui)

    if isinstance(state, BeforeCaptured):
        blend_before(display, apply_ui_mirror(state.before.to_bgr(), mirror_ui))
    return display


def draw_similarity(display, score):
    band = similarity_band(score)
    color = BAND_COLORS[band]
    cv2.circle(display, (30, 40), 14, color, -1)
    put_text(display, f"Similarity: {similarity_percent(score)}%", (54, 50), FONT_MED, color)


def draw_loading(display):
    h, w = display.shape[:2]
    put_text(display, "Loading model... Please wait.", (w // 2 - 250, h // 2), FONT_MED, (0, 255, 255))


def draw_error(display, message):
    if not message:
        return
    h, _ = display.shape[:2]
    put_text(display, message, (12, h - BTN_MARGIN * 2 - BTN_RADIUS * 2 - 10), FONT_SMALL, (0, 0, 255))


def button_positions(display):
    h, w = display.shape[:2]
    cy = h - BTN_MARGIN - BTN_RADIUS
    first_cx = w - BTN_MARGIN - BTN_RADIUS - BTN_SPACING * (len(BUTTONS) - 1)
    return {action: (first_cx + i * BTN_SPACING, cy) for i, (action, _, _) in enumerate(BUTTONS)}


def button_enabled(session, action):
    if action == "before":
        return session.can_capture_before()
    if action == "after":
        return session.can_capture_after()
    if action == "reset":
        return session.can_reset()
    return session.can_switch_camera()


def draw_buttons(display, session):
    positions = button_positions(display)
    for action, label, _ in BUTTONS:
        if action == "switch" and not session.camera.can_switch:
            continue
        cx, cy = positions[action]
        if not button_enabled(session, action):
            color = BTN_DISABLED
        elif action == "reset":
            color = BTN_RESET
        else:
            color = BTN_ENABLED
        draw_circle_button(display, cx, cy, BTN_RADIUS, color)
        put_text(display, label, (cx - BTN_RADIUS, cy - BTN_RADIUS - 6), FONT_SMALL)


def render(session, live_frame, mirror_ui=False):
    state = session.state.value
    display = compose_scene(state, live_frame, mirror_ui)

    if session.is_model_loading.value:
        draw_loading(display)
    else:
        if isinstance(state, (BeforeCaptured, AfterCaptured)):
            draw_similarity(display, session.similarity.value)
        draw_buttons(display, session)

    draw_error(display, session.error_message.value)
    return display


# -------------------------
# Input
# -------------------------
def init_button_state():
    return {
        "mouse_x": 0,
        "mouse_y": 0,
        "clicked": False,
    }


def install_mouse_handler(buttons):
    def on_mouse(event, x, y, flags, param):
        if event == cv2.EVENT_LBUTTONDOWN:
            buttons["mouse_x"] = x
            buttons["mouse_y"] = y
            buttons["clicked"] = True

    cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_AUTOSIZE)
    cv2.setMouseCallback(WINDOW_NAME, on_mouse)


def consume_click(buttons):
    click_x = buttons["mouse_x"]
    click_y = buttons["mouse_y"]
    clicked = buttons["clicked"]
    buttons["clicked"] = False
    return clicked, click_x, click_y


def hit_button(display, x, y):
    for action, (cx, cy) in button_positions(display).items():
        if point_in_circle(x, y, cx, cy, BTN_RADIUS):
            return action
    return None


def action_for_key(k):
    for action, _, key in BUTTONS:
        if k == ord(key):
            return action
    return None


def dispatch(session, action, pending):
    """Run a UI action. Disabled actions are ignored."""
    if action is None or not button_enabled(session, action):
        return
    if action == "before":
        session.capture_before()
    elif action == "after":
        session.capture_after()
    elif action == "reset":
        session.reset()
    elif action == "switch":
        task = asyncio.get_running_loop().create_task(session.switch_camera())
        pending.add(task)
        task.add_done_callback(pending.discard)


# -------------------------
# Main loop
# -------------------------
async def run_app_loop(session):
    mirror_ui = MIRROR_UI_DEFAULT
    buttons = init_button_state()
    pending = set()

    install_mouse_handler(buttons)
    print(KEY_HELP)

    try:
        while True:
            source = session.camera.source
            live = source.poll() if source is not None else None

            display = render(session, live, mirror_ui)

            clicked, click_x, click_y = consume_click(buttons)
            if clicked:
                dispatch(session, hit_button(display, click_x, click_y), pending)

            cv2.imshow(WINDOW_NAME, display)

            k = cv2.waitKey(1) & 0xFF
            if k == 27:
                break
            if k == ord("m"):
                mirror_ui = not mirror_ui
            else:
                dispatch(session, action_for_key(k), pending)

            # let scoring cycles and camera tasks run
            await asyncio.sleep(0.001)
    finally:
        for task in pending:
            task.cancel()
        cv2.destroyAllWindows()
