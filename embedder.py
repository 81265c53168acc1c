# embedder.py
import asyncio

import numpy as np
import open_clip
import torch
from loguru import logger
from PIL import Image

from compare_core import CFG, Config, Frame


class ModelLoadFailure(RuntimeError):
    """The embedding model could not be loaded. Terminal until reload()."""


class EmbedderNotReady(RuntimeError):
    """embed() was called before the model finished loading."""


class InferenceFailure(RuntimeError):
    """The model failed while embedding a single frame."""


class ClipEmbedder:
    """
    OpenCLIP image embedder.
    Takes a (H, W, 3) float32 array in [0, 1] at the model's input size and
    produces an L2-normalized embedding suitable for cosine similarity.
    """
    def __init__(
        self,
        model_name: str = "ViT-B-32",
        pretrained: str = "laion2b_s34b_b79k",
        device: str | None = None
    ):
        if device is None:
            device = "cuda" if torch.cuda.is_available() else "cpu"
        self.device = device

        self.model, _, _ = open_clip.create_model_and_transforms(
            model_name=model_name,
            pretrained=pretrained
        )
        self.model = self.model.to(self.device).eval()

        mean = torch.tensor(open_clip.OPENAI_DATASET_MEAN).view(1, 3, 1, 1)
        std = torch.tensor(open_clip.OPENAI_DATASET_STD).view(1, 3, 1, 1)
        self.mean = mean.to(self.device)
        self.std = std.to(self.device)

    @torch.no_grad()
    def embed_array(self, x: np.ndarray) -> np.ndarray:
        t = torch.from_numpy(x).permute(2, 0, 1).unsqueeze(0).to(self.device)
        t = (t - self.mean) / self.std
        feat = self.model.encode_image(t)
        feat = feat / feat.norm(dim=-1, keepdim=True)
        return feat.squeeze(0).float().cpu().numpy()


def load_clip_model(cfg: Config = CFG) -> ClipEmbedder:
    return ClipEmbedder(cfg.model_name, cfg.pretrained, cfg.device)


def prepare_input(frame: Frame, size: tuple[int, int] = CFG.input_size) -> np.ndarray:
    """
    Resize to the model input resolution (bilinear) and scale pixels to [0, 1].
    Returns a (size[1], size[0], 3) float32 array.
    """
    img = Image.fromarray(frame.pixels)
    if img.size != size:
        img = img.resize(size, Image.BILINEAR)
    return np.asarray(img, dtype=np.float32) / 255.0


class EmbedderGateway:
    """
    Owns the embedding model for the process lifetime.

    The model is loaded lazily and at most once; concurrent load() calls share
    one load task. A failed load is remembered and re-raised by later load()
    calls until reload() is called explicitly. The model is never torn down.

    `loader` is any callable returning an object with embed_array(np.ndarray).
    """

    def __init__(self, loader=None, cfg: Config = CFG):
        self.cfg = cfg
        self._loader = loader or (lambda: load_clip_model(cfg))
        self._model = None
        self._load_task: asyncio.Task | None = None
        self.load_error: BaseException | None = None

    def is_ready(self) -> bool:
        return self._model is not None

    @property
    def is_loading(self) -> bool:
        return self._load_task is not None and not self._load_task.done()

    async def load(self):
        if self._model is not None:
            return self._model
        if self.load_error is not None:
            raise ModelLoadFailure(str(self.load_error)) from self.load_error

        if self._load_task is None:
            self._load_task = asyncio.get_running_loop().create_task(self._load())
        return await asyncio.shield(self._load_task)

    async def reload(self):
        """Retry after a failed load. No-op if the model is already loaded."""
        if self._model is None and not self.is_loading:
            self.load_error = None
            self._load_task = None
        return await self.load()

    async def _load(self):
        logger.info("Loading embedding model ({} / {})", self.cfg.model_name, self.cfg.pretrained)
        try:
            model = await asyncio.to_thread(self._loader)
        except Exception as e:
            self.load_error = e
            logger.error("Model load failed: {}", e)
            raise ModelLoadFailure(str(e)) from e

        self._model = model
        logger.info("Embedding model ready (device={})", getattr(model, "device", "unknown"))
        return model

    async def embed(self, frame: Frame) -> np.ndarray:
        if self._model is None:
            raise EmbedderNotReady("embedding model is not loaded")

        x = prepare_input(frame, self.cfg.input_size)
        try:
            vec = await asyncio.to_thread(self._model.embed_array, x)
        except Exception as e:
            raise InferenceFailure(str(e)) from e
        return np.asarray(vec, dtype=np.float32).reshape(-1)


_gateway: EmbedderGateway | None = None


def get_gateway(cfg: Config = CFG) -> EmbedderGateway:
    """Return the process-wide gateway, creating it on first use."""
    global _gateway
    if _gateway is None:
        _gateway = EmbedderGateway(cfg=cfg)
    return _gateway
