"""Sub-package reserved for HTTP endpoint handlers; it holds no modules yet."""