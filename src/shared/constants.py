from enum import Enum

# Размер чанка по горизонтали (блоков на сторону)
BLOCKS_PER_CHUNK = 16

# Размер региона (чанков на сторону), только для перечисления
CHUNKS_PER_REGION = 32

# Идентификатор пустого блока (воздух)
AIR_BLOCK_ID = 0

# Сторона тайла нулевого уровня в чанках
DEFAULT_CHUNKS_PER_TILE = 2

# Размер тайла в пикселях по одной стороне
DEFAULT_TILE_SIZE_PX = 256

# Сколько соседних чанков подгружается вокруг тайла (тени, рельеф)
DEFAULT_NEIGHBORHOOD_MARGIN = 1

# Число уровней пирамиды над нулевым
DEFAULT_PYRAMID_DEPTH = 4

# Число дочерних тайлов по одной оси на родителя
DEFAULT_FAN_IN = 2

# Цвет фона (RGBA) для отсутствующих колонок
DEFAULT_BACKGROUND_COLOR = (0, 0, 0, 0)

# Цвет маркера ошибки загрузки чанка (RGBA)
DEFAULT_ERROR_COLOR = (255, 0, 255, 255)

# Сила рельефной подсветки (доля яркости на блок перепада высоты)
DEFAULT_SHADING_STRENGTH = 0.08

# Ограничение рельефной подсветки по модулю
SHADING_MAX_DELTA = 0.35

# Порог прозрачности, ниже которого трассировка колонки прекращается
TRANSMITTANCE_EPSILON = 1.0 / 512.0

# Максимальное число одновременно загружаемых чанков
DEFAULT_MAX_INFLIGHT_LOADS = 64

# Число повторов при временной ошибке чтения чанка
DEFAULT_LOAD_RETRIES = 3

# Число повторов при ошибке записи тайла в кэш
DEFAULT_COMMIT_RETRIES = 3

# Базовая пауза между повторами (секунды, удваивается)
DEFAULT_RETRY_BACKOFF_S = 0.5

# Число параллельных задач рендера на одном уровне
DEFAULT_CONCURRENCY = 8

# Подкаталог выходной папки с базами тайлов
TILE_DB_SUBDIR = 'tiles'

# Имя файла базы уровня (формат)
TILE_DB_NAME_FMT = 'zoom_{zoom}.db'

# Ключ метаданных с отпечатком конфигурации рендера
META_CONFIG_FINGERPRINT = 'config_fingerprint'

# Ключ метаданных со временем последнего завершённого прогона
META_LAST_RUN_AT = 'last_run_at'

# Ключ метаданных с раскладкой тайлов (JSON: чанки на тайл, поля, fan_in, глубина)
META_TILE_LAYOUT = 'tile_layout'

# Формат хранения изображений тайлов
TILE_IMAGE_FORMAT = 'PNG'

# Имя файла лога
LOG_FILE_NAME = 'voxel_mapper.log'

# Формат строк лога
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class BlockCategory(str, Enum):
    """Категория блока для проекции сверху."""

    AIR = 'air'  # пропускается целиком
    SOLID = 'solid'  # непрозрачный, останавливает луч
    TRANSLUCENT = 'translucent'  # стекло, лёд
    FLUID = 'fluid'  # вода, лава: затемнение с глубиной
    FOLIAGE = 'foliage'  # листва: частичная прозрачность


class DownsamplePolicy(str, Enum):
    """Фильтр уменьшения при сборке родительского тайла."""

    AVERAGE = 'average'
    NEAREST = 'nearest'


class RemovalPolicy(str, Enum):
    """Что делать с тайлом, под которым не осталось чанков."""

    PRUNE = 'prune'
    BACKGROUND = 'background'


class RunMode(str, Enum):
    FULL = 'full'
    INCREMENTAL = 'incremental'


def default_downsample_policy() -> DownsamplePolicy:
    return DownsamplePolicy.AVERAGE
